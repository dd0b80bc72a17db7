"""
Unit tests for the MicroscopeClient service.

Exercises stage, camera and acquisition operations and the one-shot
server probe against the mock server.
"""

import socket
import unittest

from py2scope.core.errors import HardwareError, ValidationError
from py2scope.models.acquisition import AcquisitionStatus
from py2scope.models.command import AcquisitionCommand, BackgroundAcquisitionCommand
from py2scope.models.connection import ConnectionConfig
from py2scope.models.microscope import FieldOfView, Position
from py2scope.services.microscope_client import MicroscopeClient, probe_server

from mock_microscope_server import MockMicroscopeServer, wait_for


def make_config(port, **overrides):
    values = dict(connect_timeout=1.0, read_timeout=1.0, reconnect_delay=0.1,
                  health_check_interval=0.0)
    values.update(overrides)
    return ConnectionConfig("127.0.0.1", port, **values)


def make_acquisition():
    return AcquisitionCommand(
        yaml_path="C:/config/scope.yml",
        projects_folder="D:/projects",
        sample_label="sample_01",
        scan_type="ppm_1",
        region_name="tissue_1",
        angle_exposures=[(-5.0, 120.0), (0.0, 250.0)],
    )


class ClientTestCase(unittest.TestCase):
    """Base class with a running server and a connected client."""

    def setUp(self):
        """Set up test fixtures."""
        self.server = MockMicroscopeServer().start()
        self.client = MicroscopeClient(make_config(self.server.port))
        self.client.connect()

    def tearDown(self):
        """Close the client and stop the server."""
        self.client.close()
        self.server.stop()


class TestStageAndCamera(ClientTestCase):
    """Test position queries and moves."""

    def test_get_position(self):
        """Test that all four axes are read."""
        self.assertEqual(self.client.get_position(), Position(100.5, 200.7, 50.0, 0.0))

    def test_move_xy(self):
        """Test an XY move followed by a query."""
        self.client.move_stage_xy(10.25, -20.5)
        self.assertEqual(self.client.get_stage_xy(), (10.25, -20.5))

    def test_move_z_and_r(self):
        """Test focus and rotation moves."""
        self.client.move_stage_z(1250.0)
        self.client.move_stage_r(90.0)
        self.assertEqual(self.client.get_stage_z(), 1250.0)
        self.assertEqual(self.client.get_stage_r(), 90.0)
        self.assertIn("move_r --angle 90.0", self.server.received)

    def test_camera_fov(self):
        """Test the field of view query."""
        self.assertEqual(self.client.get_camera_fov(), FieldOfView(518.4, 388.8))

    def test_context_manager(self):
        """Test that the client context manager connects and closes."""
        with MicroscopeClient(make_config(self.server.port)) as client:
            self.assertTrue(client.is_connected())
        self.assertFalse(client.is_connected())


class TestAcquisitionOperations(ClientTestCase):
    """Test the acquisition verbs."""

    def test_start_acquisition(self):
        """Test that a start command returns a session."""
        session = self.client.start_acquisition(make_acquisition())

        self.assertEqual(session.verb, "acquire")
        self.assertIs(session.status, AcquisitionStatus.QUEUED)
        self.assertEqual(self.server.last_start_args['sample'], "sample_01")

    def test_start_background_acquisition(self):
        """Test that a background start returns the server's detail."""
        command = BackgroundAcquisitionCommand(
            yaml_path="C:/config/scope.yml", output_path="D:/backgrounds",
            modality="ppm", angle_exposures=[(90.0, 1.2)],
        )
        session = self.client.start_background_acquisition(command)

        self.assertEqual(session.verb, "bgacquir")
        self.assertEqual(session.detail, "D:/backgrounds")

    def test_background_start_rejects_other_descriptors(self):
        """Test that only background descriptors are accepted."""
        with self.assertRaises(ValidationError):
            self.client.start_background_acquisition(make_acquisition())

    def test_status_when_idle(self):
        """Test status and manual focus queries with nothing running."""
        self.assertIs(self.client.get_acquisition_status().status, AcquisitionStatus.QUEUED)
        self.assertIsNone(self.client.is_manual_focus_requested())

    def test_progress_query(self):
        """Test the tile progress query."""
        self.server.acquisition_options = {'total_tiles': 4}
        self.client.start_acquisition(make_acquisition())
        self.client.get_acquisition_status()

        progress = self.client.get_acquisition_progress()
        self.assertEqual((progress.current, progress.total), (1, 4))

    def test_skip_without_checkpoint_is_hardware_error(self):
        """Test that the server's refusal surfaces as HardwareError."""
        with self.assertRaises(HardwareError) as cm:
            self.client.skip_autofocus_retry()
        self.assertEqual(cm.exception.message, "ERROR: no acquisition running")

    def test_cancel(self):
        """Test the cancel request."""
        self.client.start_acquisition(make_acquisition())
        self.client.cancel_acquisition()
        self.assertEqual(self.client.get_acquisition_status().status,
                         AcquisitionStatus.CANCELLING)

    def test_run_acquisition(self):
        """Test a monitored acquisition from start to completion."""
        self.server.acquisition_options = {'total_tiles': 3}
        updates = []

        handle = self.client.run_acquisition(
            make_acquisition(),
            progress_callback=lambda progress, elapsed: updates.append(progress),
            poll_interval=0.02,
        )
        result = handle.wait(timeout=5.0)

        self.assertTrue(result.succeeded)
        self.assertEqual(result.final_z, 1234.5)
        self.assertEqual(str(updates[-1]), "3/3")

    def test_shutdown_server(self):
        """Test that the shutdown request reaches the server once."""
        self.client.shutdown_server()
        self.assertTrue(wait_for(lambda: self.server.shutdown_requests == 1))
        self.assertFalse(self.client.is_connected())


class TestInjectedFailures(unittest.TestCase):
    """Test behaviour when the server reports errors at random."""

    def setUp(self):
        """Set up a server failing half of its requests."""
        self.server = MockMicroscopeServer(error_rate=0.5, seed=42).start()
        self.client = MicroscopeClient(make_config(self.server.port))

    def tearDown(self):
        """Close the client and stop the server."""
        self.client.close()
        self.server.stop()

    def test_each_call_returns_or_raises_hardware_error(self):
        """Test that every call either succeeds or raises HardwareError, never hangs."""
        successes, failures = 0, 0
        for _ in range(10):
            try:
                self.assertEqual(self.client.get_stage_xy(), (100.5, 200.7))
                successes += 1
            except HardwareError as e:
                self.assertEqual(e.message, "ERROR: injected failure")
                failures += 1

        self.assertEqual(successes + failures, 10)
        self.assertGreater(successes, 0)
        self.assertGreater(failures, 0)
        self.assertTrue(self.client.is_connected())


class TestProbeServer(unittest.TestCase):
    """Test the one-shot reachability check."""

    def setUp(self):
        """Set up test fixtures."""
        self.server = MockMicroscopeServer().start()

    def tearDown(self):
        """Stop the server."""
        self.server.stop()

    def test_responding_server(self):
        """Test probing a healthy server."""
        result = probe_server("127.0.0.1", self.server.port, timeout=1.0)
        self.assertTrue(result.can_connect)
        self.assertTrue(result.is_responding)
        self.assertIn("100.5 200.7", result.message)
        self.assertTrue(wait_for(lambda: 'quitclnt' in self.server.verbs_received()))

    def test_silent_server(self):
        """Test probing a server that accepts but never answers."""
        self.server.silent_verbs.add("getxy")
        result = probe_server("127.0.0.1", self.server.port, timeout=0.2)
        self.assertTrue(result.can_connect)
        self.assertFalse(result.is_responding)

    def test_unreachable_server(self):
        """Test probing a port nobody listens on."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]

        result = probe_server("127.0.0.1", port, timeout=0.5)
        self.assertFalse(result.can_connect)
        self.assertFalse(result.is_responding)


if __name__ == '__main__':
    unittest.main()
