from .etaactions import (
    ActionHandler as ActionHandler,
)
from .etaconfig import (
    Config as Config,
)
from .etaconfig import (
    ExtractionConfig as ExtractionConfig,
)
from .etaconfig import (
    NetworkConfig as NetworkConfig,
)
from .etaconfig import (
    PaginationConfig as PaginationConfig,
)
from .etaconfig import (
    ScanConfig as ScanConfig,
)
from .etaconfig import (
    SelectorCandidate as SelectorCandidate,
)
from .etaconfig import (
    SelectorSet as SelectorSet,
)
from .etaconfig import (
    SessionConfig as SessionConfig,
)
from .etaconfig import (
    coerce_nested as coerce_nested,
)
from .etaconfig import (
    coerce_value as coerce_value,
)
from .etaconfig import (
    load_config as load_config,
)
from .etadom import (
    PortalDom as PortalDom,
)
from .etaextract import (
    FieldExtractor as FieldExtractor,
)
from .etaextract import (
    derive_amounts as derive_amounts,
)
from .etaextract import (
    extract_line_item as extract_line_item,
)
from .etaextract import (
    share_link as share_link,
)
from .etaharvester import (
    BrowserRuntime as BrowserRuntime,
)
from .etaharvester import (
    HarvestInProgressError as HarvestInProgressError,
)
from .etaharvester import (
    HarvestOptions as HarvestOptions,
)
from .etaharvester import (
    HarvestSession as HarvestSession,
)
from .etaharvester import (
    InvoiceHarvester as InvoiceHarvester,
)
from .etaharvester import (
    RecordAccumulator as RecordAccumulator,
)
from .etaharvester import (
    records_frame as records_frame,
)
from .etamodels import (
    HarvestResult as HarvestResult,
)
from .etamodels import (
    InvoiceLineItem as InvoiceLineItem,
)
from .etamodels import (
    InvoiceRecord as InvoiceRecord,
)
from .etamodels import (
    NetworkItem as NetworkItem,
)
from .etamodels import (
    PageSnapshot as PageSnapshot,
)
from .etamodels import (
    PaginationState as PaginationState,
)
from .etamodels import (
    RowHandle as RowHandle,
)
from .etamodels import (
    StopReason as StopReason,
)
from .etanetwork import (
    NetworkCache as NetworkCache,
)
from .etanetwork import (
    PlaywrightNetworkObserver as PlaywrightNetworkObserver,
)
from .etanetwork import (
    request_signature as request_signature,
)
from .etapaginate import (
    PagerStatus as PagerStatus,
)
from .etapaginate import (
    PaginationController as PaginationController,
)
from .etareconcile import (
    SourceReconciler as SourceReconciler,
)
from .etareconcile import (
    parse_pagination_text as parse_pagination_text,
)
from .etasession import (
    is_logged_in as is_logged_in,
)
from .etasession import (
    is_login_page as is_login_page,
)
from .etasession import (
    load_context as load_context,
)
from .etasession import (
    save_context as save_context,
)
from .etasession import (
    wait_until as wait_until,
)
