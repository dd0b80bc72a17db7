"""
Unit tests for the message encoder.

Tests flag order, quoting, path normalization, scan type enrichment and
parsing of encoded messages.
"""

import shlex
import unittest

from py2scope.core.errors import ProtocolError, ValidationError
from py2scope.core.message_encoder import (
    MessageEncoder,
    enrich_scan_type,
    extract_magnification,
    format_scalar,
    normalize_path,
    parse_arguments,
    parse_float_list,
    parse_list,
    parse_message,
    quote_token,
)
from py2scope.models.command import (
    AcquisitionCommand,
    AutofocusSettings,
    BackgroundAcquisitionCommand,
    BackgroundCorrection,
    HardwareSettings,
    LaserSettings,
    ZStackSettings,
)

OBJECTIVE_20X = "LOCI_OBJECTIVE_OLYMPUS_20X_POL_001"
DETECTOR = "LOCI_DETECTOR_JAI_001"


def make_command(**overrides):
    values = dict(
        yaml_path="C:\\config\\scope.yml",
        projects_folder="D:\\projects",
        sample_label="sample_01",
        scan_type="ppm_1",
        region_name="tissue_1",
    )
    values.update(overrides)
    return AcquisitionCommand(**values)


def flags_of(message):
    return [token for token in shlex.split(message) if token.startswith('--')]


class TestScalarFormatting(unittest.TestCase):
    """Test rendering of single values."""

    def test_booleans_are_lowercase_words(self):
        """Test that booleans encode as true/false."""
        self.assertEqual(format_scalar(True), 'true')
        self.assertEqual(format_scalar(False), 'false')

    def test_floats_use_shortest_repr(self):
        """Test that floats keep their decimal point."""
        self.assertEqual(format_scalar(90.0), '90.0')
        self.assertEqual(format_scalar(-5.0), '-5.0')
        self.assertEqual(format_scalar(100.5), '100.5')

    def test_ints_and_strings(self):
        """Test that ints and strings are rendered unchanged."""
        self.assertEqual(format_scalar(488), '488')
        self.assertEqual(format_scalar('divide'), 'divide')

    def test_unsupported_types_rejected(self):
        """Test that containers and None cannot be encoded as scalars."""
        for value in (None, {}, object()):
            with self.assertRaises(ValidationError):
                format_scalar(value)


class TestQuoting(unittest.TestCase):
    """Test token quoting and path normalization."""

    def test_backslashes_become_forward_slashes(self):
        """Test that Windows paths are normalized."""
        self.assertEqual(normalize_path("C:\\a\\b.yml"), "C:/a/b.yml")
        self.assertEqual(quote_token("C:\\a\\b.yml"), "C:/a/b.yml")

    def test_space_triggers_quotes(self):
        """Test that a token with a space is quoted."""
        self.assertEqual(quote_token("D:\\my projects"), '"D:/my projects"')

    def test_tab_triggers_quotes(self):
        """Test that any whitespace, not only spaces, is quoted and decodes intact."""
        self.assertEqual(quote_token("D:/scans\tday1"), '"D:/scans\tday1"')

        message = MessageEncoder().encode_command("acquire", [("projects", "D:/scans\tday1")])
        verb, args = parse_message(message)
        self.assertEqual(verb, "acquire")
        self.assertEqual(args["projects"], "D:/scans\tday1")

    def test_list_tokens_are_quoted(self):
        """Test that parentheses and commas trigger quotes."""
        self.assertEqual(quote_token("(1,2)"), '"(1,2)"')
        self.assertEqual(quote_token("(90.0)"), '"(90.0)"')

    def test_plain_token_not_quoted(self):
        """Test that ordinary tokens pass through."""
        self.assertEqual(quote_token("sample_01"), "sample_01")

    def test_quote_and_newline_rejected(self):
        """Test that tokens that would break framing are refused."""
        with self.assertRaises(ValidationError):
            quote_token('bad"name')
        with self.assertRaises(ValidationError):
            quote_token('two\nlines')


class TestScanTypeEnrichment(unittest.TestCase):
    """Test magnification enrichment of scan types."""

    def test_extract_magnification(self):
        """Test magnification extraction from objective names."""
        self.assertEqual(extract_magnification(OBJECTIVE_20X), '20x')
        self.assertEqual(extract_magnification("nikon_10x_air"), '10x')
        self.assertIsNone(extract_magnification("NO_MAGNIFICATION"))
        self.assertIsNone(extract_magnification(None))

    def test_indexed_scan_type(self):
        """Test that the magnification goes before the trailing index."""
        self.assertEqual(enrich_scan_type("ppm_1", OBJECTIVE_20X), "ppm_20x_1")

    def test_plain_scan_type(self):
        """Test that the magnification is appended to a plain scan type."""
        self.assertEqual(enrich_scan_type("bf", OBJECTIVE_20X), "bf_20x")

    def test_enrichment_is_idempotent(self):
        """Test that enriching twice equals enriching once."""
        for scan_type in ("ppm_1", "bf", "ppm_20x_1", "shg_2"):
            once = enrich_scan_type(scan_type, OBJECTIVE_20X)
            self.assertEqual(enrich_scan_type(once, OBJECTIVE_20X), once)

    def test_unchanged_without_magnification(self):
        """Test that missing or unparseable objectives leave the scan type alone."""
        self.assertEqual(enrich_scan_type("ppm_1", None), "ppm_1")
        self.assertEqual(enrich_scan_type("ppm_1", "UNKNOWN_OBJECTIVE"), "ppm_1")


class TestEncodeCommand(unittest.TestCase):
    """Test encoding of simple verbs."""

    def setUp(self):
        """Set up test fixtures."""
        self.encoder = MessageEncoder()

    def test_move_command(self):
        """Test encoding a stage move."""
        message = self.encoder.encode_command("move", [("x", 100.5), ("y", 200.7)])
        self.assertEqual(message, "move --x 100.5 --y 200.7")

    def test_verb_without_arguments(self):
        """Test that a bare verb is sent alone."""
        self.assertEqual(self.encoder.encode_command("getxy"), "getxy")

    def test_switch_flag(self):
        """Test that None marks a flag without a value."""
        self.assertEqual(self.encoder.encode_arguments([("z-stack", None)]), "--z-stack")

    def test_list_value(self):
        """Test that lists are parenthesised and quoted."""
        message = self.encoder.encode_arguments([("angles", [-5.0, 0.0, 5.0])])
        self.assertEqual(message, '--angles "(-5.0,0.0,5.0)"')

    def test_invalid_verb_rejected(self):
        """Test that empty or multi-word verbs are refused."""
        for verb in ("", "two words"):
            with self.assertRaises(ValidationError):
                self.encoder.encode_command(verb)

    def test_unknown_descriptor_rejected(self):
        """Test that encode() only accepts command descriptors."""
        with self.assertRaises(ValidationError):
            self.encoder.encode(object())


class TestAcquisitionEncoding(unittest.TestCase):
    """Test encoding of acquisition descriptors."""

    def setUp(self):
        """Set up test fixtures."""
        self.encoder = MessageEncoder()

    def test_minimal_acquisition(self):
        """Test the exact text for a typical acquisition."""
        command = make_command(
            hardware=HardwareSettings(OBJECTIVE_20X, DETECTOR, 0.5),
            angle_exposures=[(-5.0, 120.0), (0.0, 250.0)],
        )

        self.assertEqual(
            self.encoder.encode(command),
            'acquire --yaml C:/config/scope.yml --projects D:/projects '
            '--sample sample_01 --scan-type ppm_20x_1 --region tissue_1 '
            f'--objective {OBJECTIVE_20X} --detector {DETECTOR} --pixel-size 0.5 '
            '--angles "(-5.0,0.0)" --exposures "(120.0,250.0)" --white-balance true'
        )

    def test_full_flag_order(self):
        """Test that every optional flag appears in its fixed position."""
        command = AcquisitionCommand.ppm(
            yaml_path="C:\\config\\scope.yml",
            projects_folder="D:\\projects",
            sample_label="sample_01",
            scan_type="ppm_1",
            region_name="tissue_1",
            hardware=HardwareSettings(OBJECTIVE_20X, DETECTOR, 0.5),
            angle_exposures=[(-5.0, 120.0), (0.0, 250.0), (5.0, 120.0)],
            background=BackgroundCorrection("divide", "D:\\backgrounds", (0.0,)),
            wb_mode="per_angle",
            autofocus=AutofocusSettings(9, 15, 50.0),
            laser=LaserSettings(power_mw=10.0, wavelength_nm=488, dwell_time_us=2.5, averaging=4),
            z_stack=ZStackSettings(-10.0, 10.0, 2.0),
            hint_z=1234.5678,
        )

        message = self.encoder.encode(command)
        self.assertEqual(flags_of(message), [
            '--yaml', '--projects', '--sample', '--scan-type', '--region',
            '--objective', '--detector', '--pixel-size',
            '--angles', '--exposures',
            '--bg-correction', '--bg-method', '--bg-folder', '--bg-disabled-angles',
            '--wb-mode', '--white-balance', '--wb-per-angle',
            '--af-tiles', '--af-steps', '--af-range',
            '--processing',
            '--laser-power', '--laser-wavelength', '--dwell-time', '--averaging',
            '--z-stack', '--z-start', '--z-end', '--z-step',
            '--hint-z',
        ])

        verb, args = parse_message(message)
        self.assertEqual(verb, 'acquire')
        self.assertEqual(args['bg-correction'], 'true')
        self.assertEqual(args['bg-folder'], 'D:/backgrounds')
        self.assertEqual(args['wb-mode'], 'per_angle')
        self.assertEqual(args['wb-per-angle'], 'true')
        self.assertEqual(args['processing'], '(debayer,background_correction,white_balance)')
        self.assertEqual(args['laser-wavelength'], '488')
        self.assertEqual(args['averaging'], '4')
        self.assertIsNone(args['z-stack'])
        self.assertEqual(args['z-start'], '-10.0')
        self.assertEqual(args['hint-z'], '1234.57')

    def test_angle_lists_survive_parsing(self):
        """Test that encoded angle and exposure lists parse back to the same numbers."""
        command = make_command(angle_exposures=[(-5.0, 120.0), (0.0, 250.0), (90.0, 1.5)])

        _, args = parse_message(self.encoder.encode(command))
        self.assertEqual(parse_float_list(args['angles']), [-5.0, 0.0, 90.0])
        self.assertEqual(parse_float_list(args['exposures']), [120.0, 250.0, 1.5])

    def test_encoding_is_deterministic(self):
        """Test that encoding the same descriptor twice gives identical text."""
        command = make_command(hardware=HardwareSettings(OBJECTIVE_20X, DETECTOR, 0.5))
        self.assertEqual(self.encoder.encode(command), self.encoder.encode(command))
        self.assertEqual(command.scan_type, "ppm_1")

    def test_averaging_of_one_omitted(self):
        """Test that the default averaging is not sent."""
        command = make_command(laser=LaserSettings(power_mw=5.0))
        flags = flags_of(self.encoder.encode(command))
        self.assertIn('--laser-power', flags)
        self.assertNotIn('--averaging', flags)
        self.assertNotIn('--laser-wavelength', flags)

    def test_white_balance_off(self):
        """Test that an OFF mode disables white balance."""
        _, args = parse_message(self.encoder.encode(make_command(wb_mode="off")))
        self.assertEqual(args['wb-mode'], 'off')
        self.assertEqual(args['white-balance'], 'false')
        self.assertNotIn('wb-per-angle', args)
        self.assertNotIn('processing', args)

    def test_legacy_per_angle_needs_white_balance(self):
        """Test that per-angle white balance is dropped when white balance is off."""
        command = make_command(white_balance=False, per_angle_white_balance=True)
        _, args = parse_message(self.encoder.encode(command))
        self.assertEqual(args['white-balance'], 'false')
        self.assertNotIn('wb-per-angle', args)

    def test_brightfield_preset(self):
        """Test the brightfield preset's processing pipeline."""
        command = AcquisitionCommand.brightfield(
            yaml_path="C:/cfg.yml", projects_folder="D:/p", sample_label="s",
            scan_type="bf", region_name="r",
            hardware=HardwareSettings("LOCI_OBJECTIVE_10X_001", DETECTOR, 1.0),
        )
        _, args = parse_message(self.encoder.encode(command))
        self.assertEqual(args['scan-type'], 'bf_10x')
        self.assertEqual(args['processing'], '(debayer,background_correction)')

    def test_laser_scanning_preset_has_no_processing(self):
        """Test that laser scanning acquisitions are not debayered."""
        command = AcquisitionCommand.laser_scanning(
            yaml_path="C:/cfg.yml", projects_folder="D:/p", sample_label="s",
            scan_type="shg_1", region_name="r",
        )
        self.assertNotIn('--processing', flags_of(self.encoder.encode(command)))


class TestBackgroundEncoding(unittest.TestCase):
    """Test encoding of background acquisition descriptors."""

    def test_background_command(self):
        """Test the exact text for a background acquisition."""
        command = BackgroundAcquisitionCommand(
            yaml_path="C:\\config\\scope.yml",
            output_path="D:\\bg out",
            modality="ppm",
            angle_exposures=[(90.0, 1.2)],
            per_angle_white_balance=True,
        )
        self.assertEqual(
            MessageEncoder().encode(command),
            'bgacquir --yaml C:/config/scope.yml --output "D:/bg out" --modality ppm '
            '--angles "(90.0)" --exposures "(1.2)" --use_per_angle_wb'
        )


class TestDecoding(unittest.TestCase):
    """Test parsing of encoded text."""

    def test_parse_list(self):
        """Test splitting list tokens."""
        self.assertEqual(parse_list("(-5.0,0.0,5.0)"), ['-5.0', '0.0', '5.0'])
        self.assertEqual(parse_list("()"), [])

    def test_parse_float_list_rejects_text(self):
        """Test that non-numeric lists raise ProtocolError."""
        with self.assertRaises(ProtocolError):
            parse_float_list("(a,b)")

    def test_negative_numbers_are_values(self):
        """Test that negative numbers are not mistaken for flags."""
        verb, args = parse_message("move --x -5.0 --y 3")
        self.assertEqual(verb, "move")
        self.assertEqual(args, {'x': '-5.0', 'y': '3'})

    def test_switch_flags(self):
        """Test that flags without values map to None."""
        self.assertEqual(parse_arguments("--z-stack --z-start 1.0"),
                         {'z-stack': None, 'z-start': '1.0'})

    def test_malformed_text(self):
        """Test that malformed argument text raises ProtocolError."""
        with self.assertRaises(ProtocolError):
            parse_arguments("value-without-flag")
        with self.assertRaises(ProtocolError):
            parse_arguments('--a "unterminated')
        with self.assertRaises(ProtocolError):
            parse_message("   ")


if __name__ == '__main__':
    unittest.main()
