#!/usr/bin/env python3
"""
Unit tests for the dialog watchdog's scoped lifetime.
"""

import threading
import unittest

from dialog_watchdog import DialogWatchdog


class TestDialogWatchdog(unittest.TestCase):

    def test_polls_until_stopped(self):
        polled = threading.Event()

        def poll():
            polled.set()
            return 1

        with DialogWatchdog(poll, interval=0.01) as watchdog:
            self.assertTrue(polled.wait(2))
            self.assertTrue(watchdog.running)

        self.assertFalse(watchdog.running)
        self.assertGreaterEqual(watchdog.dismissed, 1)

    def test_stopped_when_body_raises(self):
        watchdog = DialogWatchdog(lambda: 0, interval=0.01)
        with self.assertRaises(RuntimeError):
            with watchdog:
                raise RuntimeError("traversal failed")
        self.assertFalse(watchdog.running)

    def test_poll_errors_do_not_stop_the_thread(self):
        calls = []
        second_call = threading.Event()

        def poll():
            calls.append(1)
            if len(calls) == 1:
                raise OSError("window vanished")
            second_call.set()
            return 0

        with DialogWatchdog(poll, interval=0.01):
            self.assertTrue(second_call.wait(2))

    def test_stop_without_start(self):
        watchdog = DialogWatchdog(lambda: 0)
        watchdog.stop()
        self.assertFalse(watchdog.running)


if __name__ == '__main__':
    unittest.main()
