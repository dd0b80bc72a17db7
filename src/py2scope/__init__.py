# py2scope package
# Client for the microscope acquisition server socket protocol

__version__ = "0.6.0"

from .models.connection import ConnectionConfig, ConnectionState
from .core.transport import Transport
from .services.microscope_client import MicroscopeClient
from .services.acquisition_monitor import AcquisitionMonitor, AcquisitionHandle

__all__ = [
    "ConnectionConfig",
    "ConnectionState",
    "Transport",
    "MicroscopeClient",
    "AcquisitionMonitor",
    "AcquisitionHandle",
]
