# tdcloud_client/__init__.py
from .config import ClientConfig, ClientConfigBuilder, ProxyConfig
from .client import TDClient
from .jobs import ResultStream
from .schema import Column, TableSchema
from . import models
from . import exceptions

__version__ = "0.1.0"

__all__ = [
    "ClientConfig",
    "ClientConfigBuilder",
    "ProxyConfig",
    "TDClient",
    "ResultStream",
    "Column",
    "TableSchema",
    "models",
    "exceptions",
]
