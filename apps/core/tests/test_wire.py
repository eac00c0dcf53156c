import unittest
from datetime import date

from miniramadan.schemas import (
    ActivityKind,
    Family,
    FamilyMessage,
    Star,
    TimeCapsule,
)
from miniramadan.wire import (
    family_to_domain,
    family_to_wire,
    family_updates_to_wire,
    memory_updates_to_wire,
    message_to_wire,
    profile_to_domain,
    record_to_domain,
    record_to_wire,
    star_to_wire,
    time_capsule_to_wire,
    updates_to_domain,
)


class FamilyMappingTests(unittest.TestCase):
    def test_backend_column_names(self):
        family = family_to_domain(
            {
                "id": "fam-1",
                "family_name": "Testers",
                "ramadan_start_date": "2026-02-28",
                "is_ramadan_date_confirmed": None,
                "timezone": None,
                "family_code": "",
            },
            email="owner@example.com",
        )
        self.assertEqual(family.season_start_date, date(2026, 2, 28))
        self.assertFalse(family.is_start_confirmed)
        self.assertEqual(family.timezone, "UTC")
        self.assertIsNone(family.family_code)
        self.assertEqual(family.email, "owner@example.com")

    def test_wire_payload_excludes_billing(self):
        family = Family(
            id="fam-1",
            family_name="Testers",
            season_start_date=date(2026, 2, 28),
            subscription_tier="paid",
            subscription_status="active",
        )
        payload = family_to_wire(family)
        self.assertEqual(payload["ramadan_start_date"], "2026-02-28")
        self.assertNotIn("subscription_tier", payload)
        self.assertNotIn("subscription_status", payload)
        self.assertNotIn("id", payload)

    def test_updates_round_trip_through_column_names(self):
        wire = family_updates_to_wire({"season_start_date": date(2026, 3, 1), "is_start_confirmed": True})
        self.assertEqual(wire, {"ramadan_start_date": "2026-03-01", "is_ramadan_date_confirmed": True})
        self.assertEqual(
            updates_to_domain(ActivityKind.FAMILIES, wire),
            {"season_start_date": "2026-03-01", "is_start_confirmed": True},
        )


class ActivityMappingTests(unittest.TestCase):
    def test_local_ids_never_reach_the_backend(self):
        star = Star(
            id="local-123",
            profile_id="p-0",
            family_id="fam-1",
            date=date(2026, 3, 2),
            season_day=3,
            source="fasting",
            count=3,
        )
        payload = star_to_wire(star)
        self.assertNotIn("id", payload)
        self.assertEqual(payload["ramadan_day"], 3)
        self.assertEqual(payload["source"], "fasting")
        self.assertEqual(star_to_wire(star.model_copy(update={"id": "srv-1"}))["id"], "srv-1")

    def test_family_wide_message_sends_null_recipient(self):
        message = FamilyMessage(
            id="local-1",
            family_id="fam-1",
            sender_id="p-0",
            message="Ramadan Mubarak",
            date=date(2026, 2, 28),
            season_day=1,
        )
        payload = message_to_wire(message)
        self.assertIn("recipient_id", payload)
        self.assertIsNone(payload["recipient_id"])
        self.assertNotIn("voice_url", payload)

    def test_record_dispatch_by_kind(self):
        row = {
            "id": "p-9",
            "family_id": "fam-1",
            "nickname": "Amina",
            "avatar": "bunny",
            "profile_type": "little_star",
        }
        self.assertEqual(record_to_domain("profiles", row), profile_to_domain(row))
        self.assertEqual(record_to_wire(ActivityKind.PROFILES, profile_to_domain(row))["family_id"], "fam-1")

    def test_memory_updates_only_carry_mutable_fields(self):
        self.assertEqual(
            memory_updates_to_wire({"caption": "Eid", "photo_url": "x", "category": "eid"}),
            {"caption": "Eid", "category": "eid"},
        )

    def test_capsule_uses_backend_year_column(self):
        capsule = TimeCapsule(
            id="local-c",
            family_id="fam-1",
            author_id="p-0",
            recipient_id="p-1",
            written_year=2026,
            message="Open next year",
            reveal_type="specific_date",
            reveal_date=date(2027, 2, 17),
        )
        payload = time_capsule_to_wire(capsule)
        self.assertEqual(payload["written_year"], 2026)
        self.assertEqual(payload["reveal_date"], "2027-02-17")
        self.assertEqual(payload["reveal_type"], "specific_date")


if __name__ == "__main__":
    unittest.main()
