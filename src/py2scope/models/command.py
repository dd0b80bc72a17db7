"""
Command descriptor models for acquisition requests.

Descriptors are immutable value objects. Constructing one with missing
required fields raises a single ValidationError that names every missing
field, so nothing partial ever reaches the encoder or the socket.

Classes:
    AngleExposure: One rotation angle and its exposure time
    HardwareSettings: Objective, detector and pixel size
    BackgroundCorrection: Flat-field correction settings
    AutofocusSettings: Autofocus grid and search parameters
    LaserSettings: Laser scanning parameters
    ZStackSettings: Z-stack range and step
    WhiteBalanceMode: Server-side white balance strategy
    AcquisitionCommand: Full tiled acquisition request
    BackgroundAcquisitionCommand: Background (flat-field) image request
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Iterable, List, Optional, Tuple, Union

from py2scope.core.command_codes import AcquisitionCommands
from py2scope.core.errors import ValidationError


def _is_blank(value: Any) -> bool:
    """True for None and for strings that are empty once stripped."""
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _check_required(instance: Any, names: Iterable[str]) -> None:
    """
    Raise one ValidationError listing every blank required field.

    Fields are reported in the order given, which is their declaration
    order on the descriptor.
    """
    missing = [name for name in names if _is_blank(getattr(instance, name))]
    if missing:
        raise ValidationError(
            f"Missing required parameters: {', '.join(missing)}",
            missing_fields=missing,
            suggestions=[f"Provide a value for '{name}'" for name in missing]
        )


@dataclass(frozen=True)
class AngleExposure:
    """
    A rotation angle (degrees) paired with an exposure time (milliseconds).

    Example:
        >>> AngleExposure(-5.0, 120.0)
        AngleExposure(angle=-5.0, exposure_ms=120.0)
    """

    angle: float
    exposure_ms: float

    def __post_init__(self):
        try:
            object.__setattr__(self, 'angle', float(self.angle))
            object.__setattr__(self, 'exposure_ms', float(self.exposure_ms))
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Angle and exposure must be numeric: {self.angle!r}, {self.exposure_ms!r}",
                field_name='angle_exposures',
                cause=e
            )
        if self.exposure_ms < 0:
            raise ValidationError(
                f"Exposure must not be negative: {self.exposure_ms}",
                field_name='exposure_ms'
            )

    @classmethod
    def coerce(cls, value: Union["AngleExposure", Tuple[float, float]]) -> "AngleExposure":
        """Accept an AngleExposure or an ``(angle, exposure_ms)`` pair."""
        if isinstance(value, cls):
            return value
        try:
            angle, exposure = value
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Expected an (angle, exposure_ms) pair, got {value!r}",
                field_name='angle_exposures',
                cause=e
            )
        return cls(angle, exposure)


@dataclass(frozen=True)
class HardwareSettings:
    """
    Hardware identifiers sent with an acquisition.

    Attributes:
        objective: Objective identifier (e.g. "LOCI_OBJECTIVE_OLYMPUS_20X_POL_001")
        detector: Detector identifier (e.g. "LOCI_DETECTOR_JAI_001")
        pixel_size_um: Pixel size in micrometers
    """

    objective: str
    detector: str
    pixel_size_um: float

    def __post_init__(self):
        _check_required(self, ('objective', 'detector', 'pixel_size_um'))
        if self.pixel_size_um <= 0:
            raise ValidationError(
                f"Pixel size must be positive: {self.pixel_size_um}",
                field_name='pixel_size_um'
            )


@dataclass(frozen=True)
class BackgroundCorrection:
    """
    Flat-field background correction settings.

    Attributes:
        method: Correction method, "divide" or "subtract"
        folder: Folder holding the background images
        disabled_angles: Angles for which correction is skipped
    """

    method: Optional[str] = None
    folder: Optional[str] = None
    disabled_angles: Tuple[float, ...] = ()

    def __post_init__(self):
        object.__setattr__(
            self, 'disabled_angles', tuple(float(a) for a in self.disabled_angles)
        )


@dataclass(frozen=True)
class AutofocusSettings:
    """Autofocus grid size, number of Z steps and search range in micrometers."""

    n_tiles: int
    n_steps: int
    search_range_um: float

    def __post_init__(self):
        if self.n_tiles <= 0 or self.n_steps <= 0 or self.search_range_um <= 0:
            raise ValidationError(
                f"Autofocus settings must be positive: tiles={self.n_tiles}, "
                f"steps={self.n_steps}, range={self.search_range_um}",
                field_name='autofocus'
            )


@dataclass(frozen=True)
class LaserSettings:
    power_mw: Optional[float] = None
    wavelength_nm: Optional[int] = None
    dwell_time_us: Optional[float] = None
    averaging: int = 1

    def __post_init__(self):
        if self.averaging < 1:
            raise ValidationError(
                f"Averaging must be at least 1: {self.averaging}",
                field_name='averaging'
            )


@dataclass(frozen=True)
class ZStackSettings:
    start: float
    end: float
    step: float

    def __post_init__(self):
        if self.step == 0:
            raise ValidationError("Z-stack step must not be zero", field_name='step')


class WhiteBalanceMode(Enum):
    """White balance strategies understood by the server."""

    CAMERA_AWB = "camera_awb"
    SIMPLE = "simple"
    PER_ANGLE = "per_angle"
    OFF = "off"

    @classmethod
    def parse(cls, value: Union["WhiteBalanceMode", str]) -> "WhiteBalanceMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as e:
            valid = ", ".join(m.value for m in cls)
            raise ValidationError(
                f"Unknown white balance mode '{value}' (expected one of: {valid})",
                field_name='wb_mode',
                cause=e
            )


# Processing step names recognised by the server
DEBAYER = "debayer"
BACKGROUND_CORRECTION = "background_correction"
WHITE_BALANCE = "white_balance"


@dataclass(frozen=True)
class AcquisitionCommand:
    """
    Immutable description of one tiled acquisition.

    The five required fields default to None only so that every missing
    one can be reported at once; constructing the command without them
    raises ValidationError.

    Attributes:
        yaml_path: Microscope configuration file on the server
        projects_folder: Root folder for acquired projects
        sample_label: Sample name
        scan_type: Scan/modality folder name (enriched with magnification)
        region_name: Annotation or region identifier
        hardware: Objective, detector and pixel size
        angle_exposures: Rotation angles with their exposures
        background: Background correction settings, None when disabled
        wb_mode: White balance mode; when set it overrides the legacy flags
        white_balance: Legacy white balance switch
        per_angle_white_balance: Legacy per-angle white balance switch
        autofocus: Autofocus tuning
        processing: Explicit processing pipeline steps
        debayer: Put a debayer step first in the pipeline
        laser: Laser scanning parameters
        z_stack: Z-stack range
        hint_z: Predicted focus position from a tilt model

    Example:
        >>> cmd = AcquisitionCommand(
        ...     yaml_path="C:/config/scope.yml",
        ...     projects_folder="D:/projects",
        ...     sample_label="sample_01",
        ...     scan_type="ppm_1",
        ...     region_name="tissue_1",
        ...     angle_exposures=[(-5.0, 120.0), (0.0, 250.0)],
        ... )
    """

    REQUIRED_FIELDS = ('yaml_path', 'projects_folder', 'sample_label', 'scan_type', 'region_name')

    yaml_path: Optional[str] = None
    projects_folder: Optional[str] = None
    sample_label: Optional[str] = None
    scan_type: Optional[str] = None
    region_name: Optional[str] = None
    hardware: Optional[HardwareSettings] = None
    angle_exposures: Tuple[AngleExposure, ...] = ()
    background: Optional[BackgroundCorrection] = None
    wb_mode: Optional[WhiteBalanceMode] = None
    white_balance: bool = True
    per_angle_white_balance: bool = False
    autofocus: Optional[AutofocusSettings] = None
    processing: Tuple[str, ...] = ()
    debayer: bool = False
    laser: Optional[LaserSettings] = None
    z_stack: Optional[ZStackSettings] = None
    hint_z: Optional[float] = None

    def __post_init__(self):
        _check_required(self, self.REQUIRED_FIELDS)

        object.__setattr__(
            self, 'angle_exposures',
            tuple(AngleExposure.coerce(ae) for ae in self.angle_exposures)
        )
        object.__setattr__(self, 'processing', tuple(self.processing))
        if self.wb_mode is not None:
            object.__setattr__(self, 'wb_mode', WhiteBalanceMode.parse(self.wb_mode))
        if self.hint_z is not None:
            object.__setattr__(self, 'hint_z', float(self.hint_z))

    @property
    def verb(self) -> str:
        return AcquisitionCommands.ACQUIRE

    @property
    def background_enabled(self) -> bool:
        return self.background is not None

    @property
    def white_balance_enabled(self) -> bool:
        """Effective white balance switch; an explicit mode wins over the flag."""
        if self.wb_mode is not None:
            return self.wb_mode is not WhiteBalanceMode.OFF
        return self.white_balance

    @property
    def per_angle_white_balance_enabled(self) -> bool:
        if self.wb_mode is not None:
            return self.wb_mode is WhiteBalanceMode.PER_ANGLE
        return self.white_balance and self.per_angle_white_balance

    def effective_processing(self) -> Tuple[str, ...]:
        """
        Processing pipeline as sent to the server.

        Explicit steps keep their order. Debayering goes first when enabled;
        background correction and white balance are appended when their
        settings call for them and are not already listed.
        """
        steps: List[str] = list(self.processing)
        if self.debayer and DEBAYER not in steps:
            steps.insert(0, DEBAYER)
        if self.background_enabled and BACKGROUND_CORRECTION not in steps:
            steps.append(BACKGROUND_CORRECTION)
        if (self.wb_mode is not None and self.wb_mode is not WhiteBalanceMode.OFF
                and WHITE_BALANCE not in steps):
            steps.append(WHITE_BALANCE)
        return tuple(steps)

    def to_dict(self) -> dict:
        """Plain dictionary of the non-empty fields, for logging."""
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None or value == ():
                continue
            result[f.name] = value.value if isinstance(value, Enum) else value
        return result

    # ========== Presets ==========

    @classmethod
    def ppm(cls, **kwargs) -> "AcquisitionCommand":
        """Polarized acquisition: debayered, background corrected."""
        kwargs.setdefault('debayer', True)
        kwargs.setdefault('processing', (DEBAYER, BACKGROUND_CORRECTION))
        return cls(**kwargs)

    @classmethod
    def brightfield(cls, **kwargs) -> "AcquisitionCommand":
        """Brightfield acquisition: debayered, background corrected."""
        kwargs.setdefault('debayer', True)
        kwargs.setdefault('processing', (DEBAYER, BACKGROUND_CORRECTION))
        return cls(**kwargs)

    @classmethod
    def laser_scanning(cls, **kwargs) -> "AcquisitionCommand":
        """Laser scanning acquisition: monochrome, no debayering."""
        kwargs.setdefault('debayer', False)
        return cls(**kwargs)


@dataclass(frozen=True)
class BackgroundAcquisitionCommand:
    """
    Request for background (flat-field) images at a set of angles.

    The server may adapt exposures; the ones it settled on come back with
    the completed status as ``final_exposures``.
    """

    REQUIRED_FIELDS = ('yaml_path', 'output_path', 'modality')

    yaml_path: Optional[str] = None
    output_path: Optional[str] = None
    modality: Optional[str] = None
    angle_exposures: Tuple[AngleExposure, ...] = field(default_factory=tuple)
    per_angle_white_balance: bool = False

    def __post_init__(self):
        _check_required(self, self.REQUIRED_FIELDS)
        object.__setattr__(
            self, 'angle_exposures',
            tuple(AngleExposure.coerce(ae) for ae in self.angle_exposures)
        )

    @property
    def verb(self) -> str:
        return AcquisitionCommands.BACKGROUND
