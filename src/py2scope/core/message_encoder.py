"""
Message Encoder for the microscope acquisition server protocol.

Turns command descriptors into the single text line written to the socket,
and parses such lines back into flag/value pairs.

MESSAGE STRUCTURE:
==================
    <verb> --flag1 value1 --flag2 "(a,b,c)" --flag3 "quoted value"

    - Scalar fields become ``--flag value``
    - Switch flags (e.g. ``--z-stack``) carry no value
    - Lists become ``(v1,v2,v3)``
    - Any token containing a space, ``(``, ``)`` or ``,`` is wrapped in
      double quotes, so list tokens always travel quoted
    - Backslashes in any value are replaced by ``/``
    - Floats use the shortest repr (``90.0``), booleans are ``true``/``false``

Flags appear in a fixed order: required parameters, then hardware, then
optional modifiers.

SCAN TYPE ENRICHMENT:
=====================
The scan type names the output folder on the server and carries the
objective magnification, e.g. ``ppm_1`` with objective
``LOCI_OBJECTIVE_OLYMPUS_20X_POL_001`` becomes ``ppm_20x_1``. A scan type
that already contains ``<digits>x`` is left untouched, so enrichment can be
applied any number of times.

Usage Example:
    >>> encoder = MessageEncoder()
    >>> encoder.encode_command("move", [("x", 100.5), ("y", 200.7)])
    'move --x 100.5 --y 200.7'
    >>> encoder.encode(acquisition_command)
    'acquire --yaml C:/config/scope.yml --projects D:/projects ...'
"""

import re
import shlex
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from py2scope.core.errors import ProtocolError, ValidationError
from py2scope.models.command import AcquisitionCommand, BackgroundAcquisitionCommand

# (flag name without dashes, value); a value of None marks a switch flag
Field = Tuple[str, Any]

_MAGNIFICATION_IN_OBJECTIVE = re.compile(r'(\d+)X', re.IGNORECASE)
_MAGNIFICATION_IN_SCAN_TYPE = re.compile(r'\d+x')
_INDEXED_SCAN_TYPE = re.compile(r'^(.*)_(\d+)$')

_CHARS_NEEDING_QUOTES = ('(', ')', ',')


def extract_magnification(objective: Optional[str]) -> Optional[str]:
    """
    Pull the magnification token out of an objective identifier.

    Example:
        >>> extract_magnification("LOCI_OBJECTIVE_OLYMPUS_20X_POL_001")
        '20x'
    """
    if not objective:
        return None
    match = _MAGNIFICATION_IN_OBJECTIVE.search(objective)
    if match is None:
        return None
    return f"{match.group(1)}x"


def enrich_scan_type(scan_type: str, objective: Optional[str]) -> str:
    """
    Add the objective magnification to a scan type.

    ``ppm_1`` becomes ``ppm_20x_1`` and ``bf`` becomes ``bf_20x``. Values
    that already contain a magnification, and objectives without one, leave
    the scan type unchanged.
    """
    if not objective or _MAGNIFICATION_IN_SCAN_TYPE.search(scan_type):
        return scan_type
    magnification = extract_magnification(objective)
    if magnification is None:
        return scan_type
    indexed = _INDEXED_SCAN_TYPE.match(scan_type)
    if indexed:
        return f"{indexed.group(1)}_{magnification}_{indexed.group(2)}"
    return f"{scan_type}_{magnification}"


def normalize_path(value: str) -> str:
    """Replace every backslash with a forward slash."""
    return value.replace('\\', '/')


def format_scalar(value: Any) -> str:
    """
    Render one scalar the way the server parses it.

    Raises:
        ValidationError: If the value is a container or an unsupported type
    """
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, (int, str)):
        return str(value)
    raise ValidationError(
        f"Cannot encode value of type {type(value).__name__}: {value!r}",
        field_name='value'
    )


def format_list(values: Sequence[Any]) -> str:
    """Render a sequence as ``(v1,v2,v3)``."""
    return "(" + ",".join(format_scalar(v) for v in values) + ")"


def quote_token(token: str) -> str:
    """Wrap a token in double quotes if it contains whitespace, a paren or a comma."""
    token = normalize_path(token)
    if '"' in token or '\n' in token or '\r' in token:
        raise ValidationError(
            f"Value cannot contain double quotes or newlines: {token!r}",
            field_name='value'
        )
    if any(ch.isspace() or ch in _CHARS_NEEDING_QUOTES for ch in token):
        return f'"{token}"'
    return token


class MessageEncoder:
    """
    Encodes command descriptors into wire messages.

    The encoder holds no state and performs no I/O; the same descriptor
    always produces the same text.
    """

    def encode(self, command: Union[AcquisitionCommand, BackgroundAcquisitionCommand]) -> str:
        """
        Encode a descriptor into a complete request line (without terminator).

        Raises:
            ValidationError: If the descriptor type is not supported
        """
        if isinstance(command, AcquisitionCommand):
            return self.encode_command(command.verb, self.acquisition_fields(command))
        if isinstance(command, BackgroundAcquisitionCommand):
            return self.encode_command(command.verb, self.background_fields(command))
        raise ValidationError(
            f"Unsupported command descriptor: {type(command).__name__}",
            field_name='command'
        )

    def encode_arguments(self, fields: Sequence[Field]) -> str:
        """
        Encode ordered flag/value pairs.

        Lists and tuples become parenthesised lists; None marks a switch.
        """
        tokens: List[str] = []
        for name, value in fields:
            tokens.append(f"--{name}")
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                tokens.append(quote_token(format_list(value)))
            else:
                tokens.append(quote_token(format_scalar(value)))
        return " ".join(tokens)

    def encode_command(self, verb: str, fields: Sequence[Field] = ()) -> str:
        """Encode a verb followed by its arguments."""
        if not verb or any(ch.isspace() for ch in verb):
            raise ValidationError(f"Invalid command verb: {verb!r}", field_name='verb')
        arguments = self.encode_arguments(fields)
        return f"{verb} {arguments}" if arguments else verb

    def acquisition_fields(self, command: AcquisitionCommand) -> List[Field]:
        """Ordered flag/value pairs for an acquisition request."""
        objective = command.hardware.objective if command.hardware else None
        fields: List[Field] = [
            ('yaml', command.yaml_path),
            ('projects', command.projects_folder),
            ('sample', command.sample_label),
            ('scan-type', enrich_scan_type(command.scan_type, objective)),
            ('region', command.region_name),
        ]

        if command.hardware is not None:
            fields += [
                ('objective', command.hardware.objective),
                ('detector', command.hardware.detector),
                ('pixel-size', float(command.hardware.pixel_size_um)),
            ]

        if command.angle_exposures:
            fields.append(('angles', [ae.angle for ae in command.angle_exposures]))
            fields.append(('exposures', [ae.exposure_ms for ae in command.angle_exposures]))

        if command.background is not None:
            fields.append(('bg-correction', True))
            if command.background.method is not None:
                fields.append(('bg-method', command.background.method))
            if command.background.folder is not None:
                fields.append(('bg-folder', command.background.folder))
            if command.background.disabled_angles:
                fields.append(('bg-disabled-angles', list(command.background.disabled_angles)))

        if command.wb_mode is not None:
            fields.append(('wb-mode', command.wb_mode.value))
        fields.append(('white-balance', command.white_balance_enabled))
        if command.per_angle_white_balance_enabled:
            fields.append(('wb-per-angle', True))

        if command.autofocus is not None:
            fields += [
                ('af-tiles', int(command.autofocus.n_tiles)),
                ('af-steps', int(command.autofocus.n_steps)),
                ('af-range', float(command.autofocus.search_range_um)),
            ]

        processing = command.effective_processing()
        if processing:
            fields.append(('processing', list(processing)))

        laser = command.laser
        if laser is not None:
            if laser.power_mw is not None:
                fields.append(('laser-power', float(laser.power_mw)))
            if laser.wavelength_nm is not None:
                fields.append(('laser-wavelength', int(laser.wavelength_nm)))
            if laser.dwell_time_us is not None:
                fields.append(('dwell-time', float(laser.dwell_time_us)))
            if laser.averaging > 1:
                fields.append(('averaging', int(laser.averaging)))

        if command.z_stack is not None:
            fields += [
                ('z-stack', None),
                ('z-start', float(command.z_stack.start)),
                ('z-end', float(command.z_stack.end)),
                ('z-step', float(command.z_stack.step)),
            ]

        if command.hint_z is not None:
            fields.append(('hint-z', f"{command.hint_z:.2f}"))

        return fields

    def background_fields(self, command: BackgroundAcquisitionCommand) -> List[Field]:
        """Ordered flag/value pairs for a background acquisition request."""
        fields: List[Field] = [
            ('yaml', command.yaml_path),
            ('output', command.output_path),
            ('modality', command.modality),
        ]
        if command.angle_exposures:
            fields.append(('angles', [ae.angle for ae in command.angle_exposures]))
            fields.append(('exposures', [ae.exposure_ms for ae in command.angle_exposures]))
        if command.per_angle_white_balance:
            fields.append(('use_per_angle_wb', None))
        return fields


# ========== Decoding ==========

def parse_list(token: str) -> List[str]:
    """
    Split a parenthesised list token into its items.

    Example:
        >>> parse_list("(-5.0,0.0,5.0)")
        ['-5.0', '0.0', '5.0']
    """
    inner = token.strip()
    if inner.startswith('(') and inner.endswith(')'):
        inner = inner[1:-1]
    if not inner.strip():
        return []
    return [item.strip() for item in inner.split(',')]


def parse_float_list(token: str) -> List[float]:
    """Parse a list token of numbers."""
    try:
        return [float(item) for item in parse_list(token)]
    except ValueError as e:
        raise ProtocolError(f"Not a numeric list: {token}", response=token, cause=e)


def parse_arguments(text: str) -> Dict[str, Optional[str]]:
    """
    Parse ``--flag value`` text back into a dictionary.

    Switch flags map to None. Quotes are removed the way a POSIX shell
    would remove them.

    Raises:
        ProtocolError: If the text is not a sequence of flags and values
    """
    try:
        tokens = shlex.split(text)
    except ValueError as e:
        raise ProtocolError(f"Malformed argument text: {text}", response=text, cause=e)

    result: Dict[str, Optional[str]] = {}
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if not token.startswith('--'):
            raise ProtocolError(f"Expected a flag, got '{token}'", response=text)
        name = token[2:]
        if i + 1 < len(tokens) and not _looks_like_flag(tokens[i + 1]):
            result[name] = tokens[i + 1]
            i += 2
        else:
            result[name] = None
            i += 1
    return result


def parse_message(line: str) -> Tuple[str, Dict[str, Optional[str]]]:
    """Split a request line into its verb and parsed arguments."""
    line = line.strip()
    if not line:
        raise ProtocolError("Empty message", response=line)
    verb, _, rest = line.partition(' ')
    return verb, parse_arguments(rest)


def _looks_like_flag(token: str) -> bool:
    # Negative numbers such as "-5.0" are values, not flags
    return token.startswith('--')
