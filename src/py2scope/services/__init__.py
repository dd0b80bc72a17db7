# ============================================================================
# src/py2scope/services/__init__.py
"""
Services for py2scope.

High-level operations built on the Transport: the microscope client, the
acquisition monitor and configuration loading.
"""

from .microscope_client import MicroscopeClient, probe_server
from .acquisition_monitor import (
    AcquisitionMonitor,
    AcquisitionHandle,
    MonitorState,
    auto_skip_manual_focus,
)
from .configuration_service import ConfigurationService, load_connection_config

__all__ = [
    'MicroscopeClient',
    'probe_server',
    'AcquisitionMonitor',
    'AcquisitionHandle',
    'MonitorState',
    'auto_skip_manual_focus',
    'ConfigurationService',
    'load_connection_config',
]
