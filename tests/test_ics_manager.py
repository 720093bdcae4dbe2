import unittest
from datetime import datetime, timezone
from unittest import mock

from fake_remote import FakeRemoteStore

from medsync.connectivity import ConnectivityMonitor
from medsync.dispatcher import ActionDispatcher
from medsync.ics_codec import parse
from medsync.ics_manager import ICSManager, resolve_timezone
from medsync.local_store import LocalStore
from medsync.models import CalendarConfig, MutationResult, SyncConfig
from medsync.sync_orchestrator import SyncOrchestrator

NOW = datetime(2025, 2, 1, 12, 0, tzinfo=timezone.utc)

SAMPLE_ICS = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Hospital//Escala//PT",
        "BEGIN:VEVENT",
        "UID:escala-1@hospital.example",
        "SUMMARY:Plantão UTI",
        "DTSTART:20250301T220000Z",
        "DTEND:20250302T100000Z",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:escala-2@hospital.example",
        "SUMMARY:Consulta ambulatório",
        "DTSTART:20250303T130000Z",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "SUMMARY:Reunião clínica",
        "DTSTART:20250304T110000Z",
        "END:VEVENT",
        "END:VCALENDAR",
        "",
    ]
)


class ICSManagerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.remote = FakeRemoteStore()
        self.monitor = ConnectivityMonitor(initial_online=False)
        self.store = LocalStore(":memory:", online=lambda: self.monitor.is_online)
        self.orchestrator = SyncOrchestrator(
            self.store,
            ActionDispatcher(self.remote, "user-1"),
            self.monitor,
            SyncConfig(auto_sync_delay_seconds=0),
        )
        self.manager = ICSManager(self.orchestrator, CalendarConfig(timezone="UTC"))

    def tearDown(self) -> None:
        self.orchestrator.close()
        self.store.close()

    async def test_offline_import_queues_events(self) -> None:
        result = await self.manager.import_calendar(SAMPLE_ICS)
        self.assertTrue(result.ok)
        self.assertEqual((result.imported, result.queued, result.duplicates, result.failed), (3, 3, 0, 0))
        self.assertEqual(self.store.pending_count(), 3)

        events = self.orchestrator.mirror("event")
        self.assertEqual([event["title"] for event in events], ["Plantão UTI", "Consulta ambulatório", "Reunião clínica"])
        self.assertEqual([event["event_type"] for event in events], ["shift", "appointment", "meeting"])
        self.assertTrue(all(event["external_source"] == "ics_import" for event in events))
        self.assertEqual(events[0]["external_id"], "escala-1@hospital.example")
        self.assertNotEqual(events[0]["id"], "escala-1@hospital.example")

    async def test_reimport_detects_duplicates(self) -> None:
        await self.manager.import_calendar(SAMPLE_ICS)
        result = await self.manager.import_calendar(SAMPLE_ICS.encode("utf-8"))
        self.assertTrue(result.ok)
        self.assertEqual((result.imported, result.duplicates), (0, 3))
        self.assertEqual(self.store.pending_count(), 3)

    async def test_existing_mirror_events_are_skipped(self) -> None:
        self.store.save("events", [{"id": "x", "title": "plantão uti", "start_date": "2025-03-01T19:00:00-03:00"}])
        result = await self.manager.import_calendar(SAMPLE_ICS)
        self.assertEqual((result.imported, result.duplicates), (2, 1))

    async def test_online_import_writes_to_remote(self) -> None:
        self.monitor.set_online(True)
        result = await self.manager.import_calendar(SAMPLE_ICS)
        self.assertEqual((result.imported, result.queued), (3, 0))
        rows = self.remote.rows("events")
        self.assertEqual(len(rows), 3)
        self.assertTrue(all(row["user_id"] == "user-1" for row in rows))
        self.assertEqual(self.store.pending_count(), 0)

    async def test_invalid_document(self) -> None:
        result = await self.manager.import_calendar("not a calendar")
        self.assertFalse(result.ok)
        self.assertIn("VCALENDAR", result.error)
        self.assertEqual(self.store.pending_count(), 0)

    async def test_calendar_without_events(self) -> None:
        result = await self.manager.import_calendar("BEGIN:VCALENDAR\r\nVERSION:2.0\r\nEND:VCALENDAR\r\n")
        self.assertFalse(result.ok)
        self.assertEqual(result.error, "no events found")

    async def test_failed_mutations_are_counted(self) -> None:
        failure = MutationResult(ok=False, error="could not queue action")
        with mock.patch.object(self.orchestrator, "mutate", new=mock.AsyncMock(return_value=failure)):
            result = await self.manager.import_calendar(SAMPLE_ICS)
        self.assertFalse(result.ok)
        self.assertEqual((result.imported, result.failed), (0, 3))
        self.assertIn("3 event(s)", result.error)

    async def test_export_offline_uses_mirror_window(self) -> None:
        self.store.save(
            "events",
            [
                {"id": "b", "title": "Cirurgia", "start_date": "2025-03-05T12:00:00+00:00"},
                {"id": "past", "title": "Aula", "start_date": "2025-01-01T12:00:00+00:00"},
                {"id": "a", "title": "Consulta", "start_date": "2025-02-10T12:00:00+00:00"},
                {"id": "far", "title": "Curso", "start_date": "2025-12-01T12:00:00+00:00"},
                {"id": "broken", "title": "Sem data"},
            ],
        )
        text = await self.manager.export_calendar(now=NOW)
        self.assertIn("UID:evento-a@medsync.local\r\n", text)
        self.assertIn("UID:evento-b@medsync.local\r\n", text)
        self.assertNotIn("evento-past", text)
        self.assertNotIn("evento-far", text)
        self.assertNotIn("evento-broken", text)
        self.assertLess(text.index("evento-a@"), text.index("evento-b@"))
        self.assertEqual(self.remote.calls, [])

        wider = await self.manager.export_calendar(now=NOW, window_days=365)
        self.assertIn("evento-far@", wider)

    async def test_export_online_refreshes_from_remote(self) -> None:
        self.monitor.set_online(True)
        self.remote.rows("events").extend(
            [
                {
                    "id": "r1",
                    "title": "Plantão UTI",
                    "start_date": "2025-03-01T22:00:00+00:00",
                    "end_date": "2025-03-02T10:00:00+00:00",
                    "user_id": "user-1",
                },
                {"id": "r2", "title": "Alheio", "start_date": "2025-03-01T10:00:00+00:00", "user_id": "user-2"},
            ]
        )
        text = await self.manager.export_calendar(now=NOW)
        events = parse(text)
        self.assertEqual([event.uid for event in events], ["evento-r1@medsync.local"])
        self.assertEqual(events[0].end, datetime(2025, 3, 2, 10, 0, tzinfo=timezone.utc))
        self.assertIn("X-WR-TIMEZONE:UTC", text)

    def test_resolve_timezone(self) -> None:
        self.assertIs(resolve_timezone("UTC"), timezone.utc)
        with self.assertLogs("medsync.ics_manager", level="WARNING"):
            self.assertIs(resolve_timezone("Mars/Olympus_Mons"), timezone.utc)


if __name__ == "__main__":
    unittest.main()
