import unittest

from fake_remote import FakeRemoteStore

from medsync.dispatcher import (
    ActionDispatcher,
    DispatchError,
    MalformedActionError,
    ResourceHandler,
    UnknownResourceError,
    UnsupportedActionError,
)
from medsync.models import PendingAction


def _action(action_type: str, resource: str, data: dict) -> PendingAction:
    return PendingAction(id="1_abc", type=action_type, resource=resource, data=data, timestamp=1)


class ActionDispatcherTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.remote = FakeRemoteStore()
        self.dispatcher = ActionDispatcher(self.remote, "user-1")

    async def test_create_injects_owner(self) -> None:
        record = await self.dispatcher.execute(_action("CREATE", "event", {"id": "e1", "title": "Plantão UTI"}))
        self.assertEqual(record["user_id"], "user-1")
        self.assertEqual(self.remote.rows("events"), [{"id": "e1", "title": "Plantão UTI", "user_id": "user-1"}])

    async def test_update_and_delete_are_scoped_to_owner(self) -> None:
        self.remote.rows("events").extend(
            [
                {"id": "e1", "title": "Mine", "user_id": "user-1"},
                {"id": "e1", "title": "Theirs", "user_id": "user-2"},
            ]
        )
        record = await self.dispatcher.execute(
            _action("UPDATE", "event", {"id": "e1", "title": "Renamed", "user_id": "user-2"})
        )
        self.assertEqual(record, {"id": "e1", "title": "Renamed", "user_id": "user-1"})
        self.assertEqual(self.remote.rows("events")[1]["title"], "Theirs")

        await self.dispatcher.execute(_action("DELETE", "event", {"id": "e1"}))
        self.assertEqual(self.remote.rows("events"), [{"id": "e1", "title": "Theirs", "user_id": "user-2"}])

    async def test_resource_lookup_is_case_insensitive(self) -> None:
        await self.dispatcher.execute(_action("CREATE", "Financial_Event", {"id": "f1", "amount": 1200}))
        self.assertEqual(len(self.remote.rows("financial_events")), 1)

    async def test_profile_updates_by_owner(self) -> None:
        self.remote.rows("profiles").append({"user_id": "user-1", "name": "Ana"})
        record = await self.dispatcher.execute(_action("UPDATE", "profile", {"name": "Dra. Ana"}))
        self.assertEqual(record["name"], "Dra. Ana")
        with self.assertRaises(UnsupportedActionError):
            await self.dispatcher.execute(_action("DELETE", "profile", {}))

    async def test_unknown_resource_is_rejected(self) -> None:
        with self.assertRaises(UnknownResourceError):
            await self.dispatcher.execute(_action("CREATE", "invoice", {"id": "x"}))
        self.assertEqual(self.remote.calls, [])

    async def test_update_without_id_is_malformed(self) -> None:
        with self.assertRaises(MalformedActionError):
            await self.dispatcher.execute(_action("UPDATE", "calendar", {"name": "Plantões"}))

    async def test_missing_user_is_a_dispatch_error(self) -> None:
        dispatcher = ActionDispatcher(self.remote, lambda: "")
        with self.assertRaises(DispatchError):
            await dispatcher.execute(_action("CREATE", "event", {"id": "e1"}))

    async def test_register_custom_handler(self) -> None:
        self.dispatcher.register("Note", ResourceHandler("notes"))
        self.assertIn("note", self.dispatcher.resources())
        await self.dispatcher.execute(_action("CREATE", "note", {"id": "n1"}))
        self.assertEqual(self.remote.rows("notes")[0]["user_id"], "user-1")


if __name__ == "__main__":
    unittest.main()
