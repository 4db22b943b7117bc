"""Integration tests for the command line entry point."""

import os
import shutil
import signal
import subprocess
import sys
import tempfile
import time
import unittest
from unittest.mock import patch

import psutil
import yaml

import process_supervisor_main
from process_supervisor_main import main, parse_args

MAIN_SCRIPT = os.path.abspath(process_supervisor_main.__file__)


def is_alive(pid):
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


class TestMain(unittest.TestCase):
    """Test the supervisor command line."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_dir = tempfile.mkdtemp()
        self.config_path = os.path.join(self.test_dir, 'supervisor.yaml')
        self.marker = os.path.join(self.test_dir, 'foreground-ran')
        self.env = patch.dict(os.environ, {}, clear=False)
        self.env.start()
        for key in list(os.environ):
            if key.startswith('SUPERVISOR_'):
                del os.environ[key]

    def tearDown(self):
        """Clean up test fixtures."""
        self.env.stop()
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def _write_config(self, text):
        with open(self.config_path, 'w', encoding='utf-8') as f:
            f.write(text)

    def test_parse_args_foreground(self):
        """Test splitting options from the foreground command."""
        args = parse_args([
            '--config', 'supervisor.yaml', '--policy', 'proceedAnyway', '--',
            'python', 'Integration.py', '--port', '8080'
        ])
        self.assertEqual(args.config, 'supervisor.yaml')
        self.assertEqual(args.policy, 'proceedAnyway')
        self.assertEqual(
            args.foreground, ['python', 'Integration.py', '--port', '8080']
        )

    def test_foreground_exit_code_propagates(self):
        """Test that the process exit code is the foreground's."""
        self._write_config(
            f'''
poll_interval: 0.05
services:
  - name: cache
    start: ["{sys.executable}", "-c", "import time; time.sleep(60)"]
    startup_timeout: 5
'''
        )
        exit_code = main([
            '--config', self.config_path, '--', sys.executable, '-c',
            'import sys; sys.exit(3)'
        ])
        self.assertEqual(exit_code, 3)

    def test_dependency_timeout_exits_97(self):
        """Test the reserved exit code when a dependency never gets ready."""
        self._write_config(
            f'''
policy: failFast
services:
  - name: redis
    start: ["{sys.executable}", "-c", "import time; time.sleep(60)"]
    readiness:
      file: {os.path.join(self.test_dir, 'never-created')}
    startup_timeout: 1
foreground:
  command: ["{sys.executable}", "-c", "open({self.marker!r}, 'w').close()"]
'''
        )
        exit_code = main(['--config', self.config_path])
        self.assertEqual(exit_code, 97)
        self.assertFalse(os.path.exists(self.marker))

    def test_foreground_not_found_exits_97(self):
        """Test the reserved exit code when the foreground cannot run."""
        exit_code = main(['--', '/nonexistent/foreground'])
        self.assertEqual(exit_code, 97)

    def test_config_from_environment(self):
        """Test that SUPERVISOR_CONFIG is used without --config."""
        self._write_config(
            f'''
foreground:
  command: ["{sys.executable}", "-c", "import sys; sys.exit(6)"]
'''
        )
        os.environ['SUPERVISOR_CONFIG'] = self.config_path
        self.assertEqual(main([]), 6)

    def test_missing_config_file(self):
        """Test a config path that does not exist."""
        self.assertEqual(
            main(['--config', '/nonexistent/supervisor.yaml', '--', 'true']), 1
        )

    def test_missing_foreground(self):
        """Test that a foreground command is required."""
        self._write_config('services: []\n')
        self.assertEqual(main(['--config', self.config_path]), 1)

    def test_metrics_port_starts_exporter(self):
        """Test that --metrics-port serves the metrics."""
        with patch.object(
            process_supervisor_main.SupervisorMetrics, 'serve'
        ) as mock_serve:
            exit_code = main([
                '--metrics-port', '9109', '--', sys.executable, '-c', 'pass'
            ])
        self.assertEqual(exit_code, 0)
        mock_serve.assert_called_once_with(9109)



    def test_invalid_max_restarts(self):
        """Test that a non-numeric max_restarts is a configuration error."""
        self._write_config(
            '''
services:
  - name: cache
    start: cache-server
    max_restarts: lots
foreground: ["true"]
'''
        )
        self.assertEqual(main(['--config', self.config_path]), 1)

    def test_unknown_foreground_key(self):
        """Test that an unknown foreground key is a configuration error."""
        self._write_config(
            '''
foreground:
  command: ["true"]
  retries: 3
'''
        )
        self.assertEqual(main(['--config', self.config_path]), 1)


class TestMainProcess(unittest.TestCase):
    """Run the supervisor as its own process and signal it."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_dir = tempfile.mkdtemp()
        self.config_path = os.path.join(self.test_dir, 'supervisor.yaml')

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def _pid_writer(self, pid_file):
        return [
            sys.executable, '-c', '\n'.join([
                'import os, time',
                f'with open({pid_file!r}, "w") as f:',
                '    f.write(str(os.getpid()))',
                'time.sleep(60)',
            ])
        ]

    def _wait_for_pid(self, pid_file, timeout=15.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if os.path.exists(pid_file):
                with open(pid_file, encoding='utf-8') as f:
                    content = f.read()
                if content:
                    return int(content)
            time.sleep(0.05)
        self.fail(f"{pid_file} was not written within {timeout}s")

    def test_sigterm_exits_143_and_leaves_no_children(self):
        """Test SIGTERM to the supervisor process."""
        service_pid_file = os.path.join(self.test_dir, 'service.pid')
        foreground_pid_file = os.path.join(self.test_dir, 'foreground.pid')
        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump({
                'poll_interval': 0.05,
                'services': [{
                    'name': 'cache',
                    'start': self._pid_writer(service_pid_file),
                    'readiness': {'file': service_pid_file},
                    'startup_timeout': 15,
                }],
                'foreground': self._pid_writer(foreground_pid_file),
            }, f)

        env = {
            key: value for key, value in os.environ.items()
            if not key.startswith('SUPERVISOR_')
        }
        process = subprocess.Popen([
            sys.executable, MAIN_SCRIPT, '--config', self.config_path,
            '--grace-period', '1'
        ], env=env)
        try:
            pids = [
                self._wait_for_pid(service_pid_file),
                self._wait_for_pid(foreground_pid_file),
            ]
            process.send_signal(signal.SIGTERM)
            self.assertEqual(process.wait(timeout=15), 143)
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()

        for pid in pids:
            self.assertFalse(is_alive(pid), pid)


if __name__ == '__main__':
    unittest.main()
