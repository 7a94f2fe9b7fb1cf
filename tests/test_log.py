# tests/test_log.py
"""
Tests for FirstMillion.log.log
(covers TankHandler, the Qt bridge and the setup helpers).

Run:
    python -m unittest tests.test_log
"""
import logging

from PySide6.QtCore import QtMsgType

from FirstMillion.core.signals import signals
from FirstMillion.log.log import (
    TankHandler,
    get_tank,
    qt_message_handler,
    set_logging_level,
    setup_logging,
)
from tests.base import BaseTestCase


class LogModuleTests(BaseTestCase):
    """
    Each test starts with a fresh root logger configured by
    setup_logging(enable_stream_handler=False).
    """

    def setUp(self) -> None:
        super().setUp()

        logging.disable(logging.NOTSET)
        setup_logging(enable_stream_handler=False,
                      enable_qt_handler=False,
                      log_level=logging.DEBUG)

        self.tank: TankHandler = get_tank()

    def tearDown(self) -> None:
        set_logging_level(logging.DEBUG)
        super().tearDown()

    def test_single_tank_installed(self):
        setup_logging(enable_stream_handler=False, enable_qt_handler=False)
        tanks = [h for h in logging.getLogger().handlers if isinstance(h, TankHandler)]
        self.assertEqual(len(tanks), 1)

    def test_tank_filters_by_level(self):
        self.tank.clear_logs()
        logging.debug('debug message')
        logging.warning('warning message')

        self.assertEqual(len(self.tank.get_logs()), 2)
        warnings = self.tank.get_logs(logging.WARNING)
        self.assertEqual(len(warnings), 1)
        self.assertIn('warning message', warnings[0])

    def test_error_requests_log_viewer(self):
        triggered = []

        def _slot() -> None:
            triggered.append(True)

        signals.showLogs.connect(_slot)
        try:
            logging.info('not an error')
            self.assertFalse(triggered)
            logging.error('sync failed')
        finally:
            signals.showLogs.disconnect(_slot)

        self.assertTrue(triggered, 'showLogs not emitted for ERROR message')

    def test_clear_logs(self):
        logging.info('something')
        self.tank.clear_logs()
        self.assertEqual(self.tank.get_logs(), [])

    def test_set_logging_level(self):
        set_logging_level(logging.WARNING)
        self.tank.clear_logs()
        logging.info('hidden')
        logging.warning('shown')
        self.assertEqual(len(self.tank.get_logs()), 1)

        with self.assertRaises(ValueError):
            set_logging_level(5)
        with self.assertRaises(ValueError):
            set_logging_level('DEBUG')

    def test_qt_messages_forwarded(self):
        with self.assertLogs('Qt', level=logging.WARNING) as captured:
            qt_message_handler(QtMsgType.QtWarningMsg, None, ' qt warning \n')
        self.assertEqual(captured.records[0].getMessage(), 'qt warning')
