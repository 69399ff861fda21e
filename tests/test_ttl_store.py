from __future__ import annotations

import unittest

from kars.services.ttl_store import ExpiringStore


class FakeTimer:
    def __init__(self, interval, function, args) -> None:
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.function(*self.args)


class ExpiringStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.timers: list[FakeTimer] = []

        def factory(interval, function, args):
            timer = FakeTimer(interval, function, args)
            self.timers.append(timer)
            return timer

        self.store: ExpiringStore[str] = ExpiringStore(300, name="test", timer_factory=factory)

    def test_rejects_non_positive_ttl(self) -> None:
        with self.assertRaises(ValueError):
            ExpiringStore(0)

    def test_set_starts_daemon_timer_with_ttl(self) -> None:
        self.store.set("a", "one")

        self.assertEqual(self.store.get("a"), "one")
        self.assertIn("a", self.store)
        self.assertEqual(len(self.timers), 1)
        self.assertTrue(self.timers[0].started)
        self.assertTrue(self.timers[0].daemon)
        self.assertEqual(self.timers[0].interval, 300.0)

    def test_timer_expiry_evicts_entry(self) -> None:
        self.store.set("a", "one")
        self.timers[0].fire()

        self.assertIsNone(self.store.get("a"))
        self.assertEqual(len(self.store), 0)

    def test_replacing_key_cancels_old_timer_and_ignores_late_fire(self) -> None:
        self.store.set("a", "one")
        self.store.set("a", "two")

        self.assertTrue(self.timers[0].cancelled)
        self.assertFalse(self.timers[1].cancelled)
        self.timers[0].fire()
        self.assertEqual(self.store.get("a"), "two")
        self.timers[1].fire()
        self.assertIsNone(self.store.get("a"))

    def test_pop_and_delete_cancel_timers(self) -> None:
        self.store.set("a", "one")
        self.store.set("b", "two")

        self.assertEqual(self.store.pop("a"), "one")
        self.assertIsNone(self.store.pop("a"))
        self.assertTrue(self.store.delete("b"))
        self.assertFalse(self.store.delete("b"))
        self.assertTrue(all(timer.cancelled for timer in self.timers))

    def test_clear_cancels_everything(self) -> None:
        for key in ("a", "b", "c"):
            self.store.set(key, key.upper())
        self.store.clear()

        self.assertEqual(len(self.store), 0)
        self.assertTrue(all(timer.cancelled for timer in self.timers))


if __name__ == "__main__":
    unittest.main()
