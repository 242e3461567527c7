from __future__ import annotations

from unittest import TestCase

from pvpcheap.schemas.rule_configs import (
    CheapestHoursConfig,
    ManualConfig,
    PriceThresholdConfig,
    RuleConfigError,
    TimeScheduleConfig,
    parse_rule_config,
)


class PriceThresholdConfigTests(TestCase):
    def test_defaults_to_strictly_below(self) -> None:
        config = parse_rule_config("price_threshold", {"threshold": 0.12})

        self.assertIsInstance(config, PriceThresholdConfig)
        self.assertTrue(config.matches(0.11))
        self.assertFalse(config.matches(0.12))
        self.assertFalse(config.matches(0.2))

    def test_above_comparison_is_strict(self) -> None:
        config = parse_rule_config("price_threshold", {"threshold": 0.2, "comparison": "above"})

        self.assertTrue(config.matches(0.21))
        self.assertFalse(config.matches(0.2))

    def test_missing_threshold_is_rejected(self) -> None:
        with self.assertRaises(RuleConfigError) as ctx:
            parse_rule_config("price_threshold", {"comparison": "below"})

        self.assertEqual(ctx.exception.rule_type, "price_threshold")
        self.assertIn("threshold", ctx.exception.detail)

    def test_unknown_comparison_is_rejected(self) -> None:
        with self.assertRaises(RuleConfigError):
            parse_rule_config("price_threshold", {"threshold": 0.1, "comparison": "equal"})


class CheapestHoursConfigTests(TestCase):
    def test_default_window_is_whole_day(self) -> None:
        config = parse_rule_config("cheapest_hours", {"hours_needed": 3})

        self.assertIsInstance(config, CheapestHoursConfig)
        self.assertEqual(config.window_hours(), list(range(24)))
        self.assertFalse(config.contiguous)

    def test_clock_strings_are_accepted_as_window_bounds(self) -> None:
        config = parse_rule_config(
            "cheapest_hours",
            {"hours_needed": 2, "window_start": "08:00", "window_end": "12:00"},
        )

        self.assertEqual(config.window_hours(), [8, 9, 10, 11])

    def test_window_wraps_around_midnight(self) -> None:
        config = parse_rule_config(
            "cheapest_hours",
            {"hours_needed": 2, "window_start": 22, "window_end": 3},
        )

        self.assertEqual(config.window_hours(), [22, 23, 0, 1, 2])

    def test_hours_needed_is_bounded(self) -> None:
        with self.assertRaises(RuleConfigError):
            parse_rule_config("cheapest_hours", {"hours_needed": 25})
        with self.assertRaises(RuleConfigError):
            parse_rule_config("cheapest_hours", {"hours_needed": -1})

    def test_invalid_window_string_is_rejected(self) -> None:
        with self.assertRaises(RuleConfigError):
            parse_rule_config("cheapest_hours", {"hours_needed": 1, "window_start": "late"})


class TimeScheduleConfigTests(TestCase):
    def test_days_are_normalized(self) -> None:
        config = parse_rule_config(
            "time_schedule",
            {"days": ["Monday", "wed", "WED", "sunday"], "time": "07:30"},
        )

        self.assertIsInstance(config, TimeScheduleConfig)
        self.assertEqual(config.days, ("mon", "wed", "sun"))
        self.assertEqual(config.start_hour, 7)
        self.assertEqual(config.hours(), [7])
        self.assertTrue(config.runs_on(0))
        self.assertFalse(config.runs_on(1))
        self.assertTrue(config.runs_on(6))

    def test_comma_separated_days(self) -> None:
        config = parse_rule_config("time_schedule", {"days": "sat,sun", "time": "10:00"})

        self.assertEqual(config.days, ("sat", "sun"))

    def test_end_time_covers_range_and_wraps(self) -> None:
        daytime = parse_rule_config(
            "time_schedule",
            {"days": ["mon"], "time": "09:00", "end_time": "12:00"},
        )
        overnight = parse_rule_config(
            "time_schedule",
            {"days": ["mon"], "time": "23:00", "end_time": "02:00"},
        )

        self.assertEqual(daytime.hours(), [9, 10, 11])
        self.assertEqual(overnight.hours(), [23, 0, 1])

    def test_unknown_weekday_is_rejected(self) -> None:
        with self.assertRaises(RuleConfigError):
            parse_rule_config("time_schedule", {"days": ["funday"], "time": "10:00"})

    def test_invalid_time_is_rejected(self) -> None:
        with self.assertRaises(RuleConfigError):
            parse_rule_config("time_schedule", {"days": ["mon"], "time": "24:00"})
        with self.assertRaises(RuleConfigError):
            parse_rule_config("time_schedule", {"days": ["mon"], "time": "10:75"})

    def test_empty_days_are_rejected(self) -> None:
        with self.assertRaises(RuleConfigError):
            parse_rule_config("time_schedule", {"days": [], "time": "10:00"})


class RuleConfigDispatchTests(TestCase):
    def test_manual_rules_accept_any_config(self) -> None:
        config = parse_rule_config("manual", {"note": "only via API"})

        self.assertIsInstance(config, ManualConfig)

    def test_null_config_is_treated_as_empty(self) -> None:
        self.assertIsInstance(parse_rule_config("manual", None), ManualConfig)

    def test_unknown_rule_type_is_rejected(self) -> None:
        with self.assertRaises(RuleConfigError) as ctx:
            parse_rule_config("solar_surplus", {})

        self.assertIn("unknown rule type", str(ctx.exception))

    def test_non_object_config_is_rejected(self) -> None:
        with self.assertRaises(RuleConfigError):
            parse_rule_config("price_threshold", [0.1])

    def test_rule_config_error_is_a_value_error(self) -> None:
        with self.assertRaises(ValueError):
            parse_rule_config("cheapest_hours", {})
