"""
Tests for the scheduled job runner's command line.
"""

from datetime import timezone

import pytest

from cron.dispatch_jobs import JOBS, build_parser


class TestJobParser:

    def test_every_evaluator_is_registered(self):
        assert set(JOBS) == {
            "auto-drop",
            "confirmation-reminders",
            "close-bid-windows",
            "no-show-detection",
            "health-daily",
            "health-weekly",
            "lock-preferences",
            "deliver-notifications",
        }

    def test_now_override(self):
        args = build_parser().parse_args(["no-show-detection", "--now", "2026-06-15T13:05:00+00:00"])
        assert args.job == "no-show-detection"
        assert args.now.tzinfo is not None
        assert args.now.astimezone(timezone.utc).hour == 13

    def test_naive_now_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["auto-drop", "--now", "2026-06-15T09:00:00"])

    def test_unknown_job_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["learn"])
