import unittest
from datetime import date, datetime, timedelta, timezone

from miniramadan.progression import (
    MAX_STARS_PER_DAY,
    MILESTONES,
    ProgressionConfig,
    available_avatars,
    compute_progress,
    daily_cap,
    family_composition,
    is_avatar_allowed,
    is_premium,
    max_season_points,
    scaled_milestones,
    stars_for_fasting,
    stars_for_suhoor,
)
from miniramadan.schemas import Family, ProfileType

COMPOSITIONS = [
    [],
    ["adult"],
    ["adult", "adult"],
    ["adult", "child"],
    ["adult", "adult", "child", "child"],
    ["little_star"],
    ["adult", "child", "little_star", "little_star"],
]


class ScalingTests(unittest.TestCase):
    def test_reference_household_keeps_base_thresholds(self):
        thresholds = [m.threshold for m in scaled_milestones(["adult", "adult"])]
        self.assertEqual(thresholds, [m.base_threshold for m in MILESTONES])

    def test_adult_and_child_match_reference(self):
        result = compute_progress(0, ["adult", "child"])
        self.assertEqual(result.scale_factor, 1.0)
        self.assertEqual(result.thresholds[:3], [15, 35, 60])

    def test_thresholds_round_half_up_to_five(self):
        # 3 members -> factor 1.5; 15 * 1.5 = 22.5 rounds up to 25.
        result = compute_progress(0, ["adult", "adult", "child"])
        self.assertEqual(result.scale_factor, 1.5)
        self.assertEqual(result.thresholds[0], 25)
        self.assertEqual(result.thresholds[1], 55)

    def test_small_families_floor_at_minimum(self):
        result = compute_progress(0, ["little_star"])
        self.assertEqual(result.thresholds[:3], [5, 15, 25])
        self.assertTrue(all(t >= 5 and t % 5 == 0 for t in result.thresholds))

    def test_empty_family_uses_factor_one(self):
        result = compute_progress(40, [])
        self.assertEqual(result.scale_factor, 1.0)
        self.assertEqual(result.max_season_points, 0)
        self.assertEqual([m.name for m in result.unlocked], ["patience", "generosity"])

    def test_thresholds_are_increasing(self):
        for types in COMPOSITIONS:
            thresholds = compute_progress(0, types).thresholds
            with self.subTest(types=types):
                self.assertEqual(thresholds, sorted(thresholds))

    def test_max_season_points(self):
        self.assertEqual(max_season_points(family_composition(["adult", "adult"])), 480)
        self.assertEqual(max_season_points(family_composition(["little_star"])), 180)


class UnlockTests(unittest.TestCase):
    def test_exact_threshold_unlocks(self):
        result = compute_progress(15, ["adult", "adult"])
        self.assertEqual([m.name for m in result.unlocked], ["patience"])
        self.assertEqual(result.next.name, "generosity")
        self.assertEqual(result.remaining, 20)

    def test_one_below_threshold_stays_locked(self):
        result = compute_progress(14, ["adult", "adult"])
        self.assertEqual(result.unlocked, [])
        self.assertEqual(result.remaining, 1)

    def test_family_of_adult_and_child_at_35(self):
        result = compute_progress(35, ["adult", "child"])
        self.assertEqual([m.name for m in result.unlocked], ["patience", "generosity"])
        self.assertEqual(result.next.name, "courage")
        self.assertEqual(result.remaining, 25)

    def test_all_unlocked_has_no_next(self):
        result = compute_progress(1000, ["adult", "adult"])
        self.assertEqual(len(result.unlocked), len(MILESTONES))
        self.assertIsNone(result.next)
        self.assertIsNone(result.remaining)
        self.assertTrue(result.is_complete)

    def test_same_input_same_output(self):
        first = compute_progress(72, ["adult", "child", "little_star"])
        second = compute_progress(72, ["adult", "child", "little_star"])
        self.assertEqual(first, second)

    def test_profile_order_does_not_matter(self):
        self.assertEqual(
            compute_progress(50, ["child", "adult"]).thresholds,
            compute_progress(50, ["adult", "child"]).thresholds,
        )

    def test_unlocks_are_monotonic(self):
        for types in COMPOSITIONS:
            previous = 0
            for total in range(0, 700, 7):
                unlocked = len(compute_progress(total, types).unlocked)
                with self.subTest(types=types, total=total):
                    self.assertGreaterEqual(unlocked, previous)
                previous = unlocked

    def test_negative_total_rejected(self):
        with self.assertRaises(ValueError):
            compute_progress(-1, ["adult"])

    def test_cached_result_is_not_shared(self):
        first = compute_progress(20, ["adult", "adult"])
        first.unlocked.clear()
        self.assertEqual(len(compute_progress(20, ["adult", "adult"]).unlocked), 1)

    def test_custom_config(self):
        config = ProgressionConfig(scale_factor=lambda composition: 2.0)
        result = compute_progress(30, ["adult"], config)
        self.assertEqual(result.thresholds[0], 30)
        self.assertEqual([m.name for m in result.unlocked], ["patience"])


class RewardTests(unittest.TestCase):
    def test_daily_caps(self):
        self.assertEqual(daily_cap("adult"), 8)
        self.assertEqual(daily_cap(ProfileType.CHILD), 8)
        self.assertEqual(MAX_STARS_PER_DAY[ProfileType.LITTLE_STAR], 6)

    def test_fasting_stars_by_mode(self):
        self.assertEqual(stars_for_fasting("full"), 3)
        self.assertEqual(stars_for_fasting("partial"), 2)
        self.assertEqual(stars_for_fasting("tried"), 1)
        self.assertEqual(stars_for_fasting("not_today"), 0)

    def test_suhoor_stars_by_variety(self):
        self.assertEqual(stars_for_suhoor([]), 0)
        self.assertEqual(stars_for_suhoor(["water"]), 1)
        self.assertEqual(stars_for_suhoor(["water", "protein", "fruit", "dairy"]), 2)


class EntitlementTests(unittest.TestCase):
    def family(self, **overrides):
        data = {"id": "fam-1", "family_name": "Test", "season_start_date": date(2026, 2, 28)}
        data.update(overrides)
        return Family(**data)

    def test_free_family_is_not_premium(self):
        self.assertFalse(is_premium(self.family()))
        self.assertFalse(is_premium(None))

    def test_paid_active_family_is_premium(self):
        self.assertTrue(is_premium(self.family(subscription_tier="paid", subscription_status="active")))

    def test_expired_period_is_not_premium(self):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        family = self.family(
            subscription_tier="paid",
            subscription_status="active",
            subscription_current_period_end=now - timedelta(days=1),
        )
        self.assertFalse(is_premium(family, now))

    def test_premium_avatars_are_gated(self):
        self.assertTrue(is_avatar_allowed("moon", "adult", premium=False))
        self.assertFalse(is_avatar_allowed("mosque", "adult", premium=False))
        self.assertTrue(is_avatar_allowed("mosque", "adult", premium=True))

    def test_avatars_respect_profile_type(self):
        self.assertFalse(is_avatar_allowed("rocket", "adult", premium=True))
        self.assertIn("bunny", [a.id for a in available_avatars("little_star", premium=False)])


if __name__ == "__main__":
    unittest.main()
