# ============================================================================
# src/py2scope/models/__init__.py
"""
Data models for py2scope.

This package contains the value objects shared by the transport, the
encoder and the acquisition monitor.
"""

from .connection import (
    ConnectionConfig,
    ConnectionState,
    ConnectionStatus,
    HealthProbeRecord,
    ServerProbeResult,
)

from .command import (
    AngleExposure,
    HardwareSettings,
    BackgroundCorrection,
    AutofocusSettings,
    LaserSettings,
    ZStackSettings,
    WhiteBalanceMode,
    AcquisitionCommand,
    BackgroundAcquisitionCommand,
)

from .acquisition import (
    AcquisitionStatus,
    AcquisitionProgress,
    StatusReport,
    AcquisitionSession,
    ManualFocusDecision,
    ManualFocusRequest,
    AcquisitionResult,
)

from .microscope import Position, FieldOfView

__all__ = [
    'ConnectionConfig',
    'ConnectionState',
    'ConnectionStatus',
    'HealthProbeRecord',
    'ServerProbeResult',
    'AngleExposure',
    'HardwareSettings',
    'BackgroundCorrection',
    'AutofocusSettings',
    'LaserSettings',
    'ZStackSettings',
    'WhiteBalanceMode',
    'AcquisitionCommand',
    'BackgroundAcquisitionCommand',
    'AcquisitionStatus',
    'AcquisitionProgress',
    'StatusReport',
    'AcquisitionSession',
    'ManualFocusDecision',
    'ManualFocusRequest',
    'AcquisitionResult',
    'Position',
    'FieldOfView',
]
