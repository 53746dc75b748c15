"""
Tests for the logging setup helpers.
"""

import logging
import tempfile
import unittest
from pathlib import Path

from scanfusion.utils.logging_config import ScanFusionLogger, debug_mode, setup_logging


class TestLoggingConfig(unittest.TestCase):

    def setUp(self):
        self.root = logging.getLogger()
        self.saved_handlers = list(self.root.handlers)
        self.saved_level = self.root.level

    def tearDown(self):
        for handler in list(self.root.handlers):
            self.root.removeHandler(handler)
            handler.close()
        for handler in self.saved_handlers:
            self.root.addHandler(handler)
        self.root.setLevel(self.saved_level)

    def test_parse_level(self):
        self.assertEqual(ScanFusionLogger.parse_level('debug'), logging.DEBUG)
        self.assertEqual(ScanFusionLogger.parse_level(logging.ERROR), logging.ERROR)
        self.assertEqual(ScanFusionLogger.parse_level('verbose'), logging.INFO)

    def test_file_and_module_levels(self):
        with tempfile.TemporaryDirectory() as tmp:
            log_file = Path(tmp) / 'nested' / 'scan.log'
            setup_logging(level='WARNING', log_file=str(log_file),
                          module_levels={'scanfusion.processing.fusion': 'DEBUG'})

            self.assertEqual(len(self.root.handlers), 2)
            self.assertEqual(logging.getLogger('scanfusion.processing.fusion').level, logging.DEBUG)
            self.assertEqual(logging.getLogger('scanfusion.core').level, logging.WARNING)

            logging.getLogger('scanfusion.processing.fusion').debug("merged 10 points")
            for handler in self.root.handlers:
                handler.flush()
            self.assertIn("merged 10 points", log_file.read_text())

            for handler in list(self.root.handlers):
                self.root.removeHandler(handler)
                handler.close()

    def test_console_only(self):
        setup_logging(level='INFO', console=True)
        self.assertEqual(len(self.root.handlers), 1)
        self.assertEqual(self.root.handlers[0].level, logging.INFO)

    def test_debug_mode_creates_session_dir(self):
        with tempfile.TemporaryDirectory() as tmp:
            log_file = Path(debug_mode('session_a', base_dir=Path(tmp)))
            self.assertEqual(log_file.parent, Path(tmp) / 'session_a')
            self.assertTrue(log_file.exists())
            self.assertEqual(logging.getLogger('scanfusion.core').level, logging.DEBUG)

            for handler in list(self.root.handlers):
                self.root.removeHandler(handler)
                handler.close()


if __name__ == '__main__':
    unittest.main()
