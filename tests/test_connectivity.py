import unittest

from medsync.connectivity import ConnectivityMonitor


class ConnectivityMonitorTests(unittest.TestCase):
    def test_notifies_only_on_transitions(self) -> None:
        monitor = ConnectivityMonitor(initial_online=True)
        seen: list[bool] = []
        monitor.subscribe(seen.append)
        self.assertFalse(monitor.set_online(True))
        self.assertTrue(monitor.set_online(False))
        self.assertFalse(monitor.set_online(False))
        self.assertTrue(monitor.set_online(True))
        self.assertEqual(seen, [False, True])
        self.assertTrue(monitor.is_online)

    def test_unsubscribe_stops_notifications(self) -> None:
        monitor = ConnectivityMonitor(initial_online=False)
        seen: list[bool] = []
        unsubscribe = monitor.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        monitor.set_online(True)
        self.assertEqual(seen, [])

    def test_failing_listener_does_not_block_others(self) -> None:
        monitor = ConnectivityMonitor(initial_online=False)
        seen: list[bool] = []

        def broken(_online: bool) -> None:
            raise RuntimeError("listener bug")

        monitor.subscribe(broken)
        monitor.subscribe(seen.append)
        with self.assertLogs("medsync.connectivity", level="ERROR"):
            self.assertTrue(monitor.set_online(True))
        self.assertEqual(seen, [True])


if __name__ == "__main__":
    unittest.main()
