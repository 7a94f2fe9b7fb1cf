"""Unit tests for FirstMillion.core.bus."""
import logging

from FirstMillion.core.bus import ChangeBus
from tests.base import BaseTestCase


class ChangeBusTests(BaseTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.changes = ChangeBus()

    def test_subscribers_called_in_order(self):
        calls = []
        self.changes.subscribe('transactions', lambda: calls.append('a'))
        self.changes.subscribe('transactions', lambda: calls.append('b'))

        self.changes.publish('transactions')
        self.assertEqual(calls, ['a', 'b'])

    def test_publish_only_reaches_kind(self):
        calls = []
        self.changes.subscribe('assets', lambda: calls.append('assets'))
        self.changes.publish('transactions')
        self.assertEqual(calls, [])

    def test_unsubscribe_is_idempotent(self):
        calls = []
        unsubscribe = self.changes.subscribe('goals', lambda: calls.append(1))
        unsubscribe()
        unsubscribe()

        self.changes.publish('goals')
        self.assertEqual(calls, [])
        self.assertEqual(self.changes.subscriber_count('goals'), 0)

    def test_same_callback_twice_is_two_subscriptions(self):
        calls = []

        def callback():
            calls.append(1)

        first = self.changes.subscribe('goals', callback)
        self.changes.subscribe('goals', callback)
        first()

        self.changes.publish('goals')
        self.assertEqual(calls, [1])

    def test_failing_subscriber_does_not_stop_others(self):
        calls = []

        def broken():
            raise RuntimeError('boom')

        self.changes.subscribe('categories', broken)
        self.changes.subscribe('categories', lambda: calls.append('ok'))

        with self.assertLogs(level=logging.ERROR):
            self.changes.publish('categories')
        self.assertEqual(calls, ['ok'])

    def test_unsubscribe_during_publish(self):
        calls = []
        unsubscribe = None

        def once():
            calls.append('once')
            unsubscribe()

        unsubscribe = self.changes.subscribe('assets', once)
        self.changes.subscribe('assets', lambda: calls.append('other'))

        self.changes.publish('assets')
        self.changes.publish('assets')
        self.assertEqual(calls, ['once', 'other', 'other'])

    def test_changed_signal_emitted(self):
        kinds = []
        self.changes.changed.connect(kinds.append)
        self.changes.publish('investments')
        self.assertEqual(kinds, ['investments'])

    def test_non_callable_rejected(self):
        with self.assertRaises(TypeError):
            self.changes.subscribe('assets', 'not callable')

    def test_clear(self):
        self.changes.subscribe('assets', lambda: None)
        self.changes.clear()
        self.assertEqual(self.changes.subscriber_count('assets'), 0)
