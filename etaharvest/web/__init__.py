from .etaharvest_api import (
    create_app as create_app,
)
from .etaharvest_log import (
    broker as broker,
)
from .etaharvest_mgr import (
    BrowserWorker as BrowserWorker,
)
