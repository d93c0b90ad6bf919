"""
CLI tests.
Tests for filter parsing and command dispatch.
"""

import argparse
import json
import pytest
from datetime import date

from pricewatch.cli import _dispatch, add_filter, filter_from_dict
from pricewatch.config import AppConfig
from pricewatch.database.models import MonitorFrequency
from pricewatch.main import PricewatchApp

FILTER_JSON = {
    "user_id": 1,
    "name": "NYC to LA",
    "origins": ["jfk"],
    "destinations": ["lax"],
    "departure_dates": ["2026-12-01"],
    "target_price": 400,
    "monitor_frequency": "hourly",
    "flexibility": {"airline": True},
    "notification_channels": {"email": "traveler@example.com"},
}


@pytest.fixture
def app(db, clock):
    application = PricewatchApp(AppConfig(), db=db, providers=[], notifiers={}, clock=clock)
    yield application
    application.gateway.close()


def _args(command, **kwargs):
    return argparse.Namespace(command=command, **kwargs)


class TestFilterFromDict:
    """Test JSON filter parsing."""

    def test_parses_fields(self):
        """Should normalize codes and parse dates and enums."""
        f = filter_from_dict(FILTER_JSON)

        assert f.origins == ["JFK"]
        assert f.destinations == ["LAX"]
        assert f.departure_dates == [date(2026, 12, 1)]
        assert f.target_price == 400.0
        assert f.monitor_frequency == MonitorFrequency.HOURLY
        assert f.is_flexible("airline")

    def test_missing_field(self):
        """Should name the missing field."""
        data = dict(FILTER_JSON)
        del data["target_price"]
        with pytest.raises(ValueError, match="target_price"):
            filter_from_dict(data)

    def test_bad_date(self):
        """Should reject malformed dates."""
        with pytest.raises(ValueError):
            filter_from_dict({**FILTER_JSON, "departure_dates": ["12/01/2026"]})

    def test_unknown_passenger_field(self):
        """Should reject unknown passenger keys."""
        with pytest.raises(ValueError, match="Malformed"):
            filter_from_dict({**FILTER_JSON, "passengers": {"pets": 1}})


class TestCommands:
    """Test command dispatch against a real app."""

    def test_add_and_list_filters(self, app, capsys):
        """Should create a filter from JSON and list it."""
        created = add_filter(app.db, json.dumps(FILTER_JSON))
        assert created.id is not None

        _dispatch(app, app.config, _args("filter", action="list"))

        out = capsys.readouterr().out
        assert f"ID: {created.id}" in out
        assert "JFK -> LAX" in out

    def test_add_invalid_filter(self, app, capsys):
        """Should print validation problems instead of raising."""
        payload = json.dumps({**FILTER_JSON, "target_price": -1})

        _dispatch(app, app.config, _args("filter", action="add", json=payload))

        assert "Invalid filter" in capsys.readouterr().out

    def test_check(self, app, capsys, filter_factory):
        """Should run one cycle and print its counts."""
        app.filter_repo.create(filter_factory())

        _dispatch(app, app.config, _args("check"))

        assert "no data: 1" in capsys.readouterr().out

    def test_alert_actions(self, app, capsys, saved_filter):
        """Should pause an alert and report a refused resume of an active one."""
        alert = app.state_machine.ensure_alert(saved_filter)

        _dispatch(app, app.config, _args("alert", action="pause", alert_id=alert.id, version=None))
        assert "active -> paused" in capsys.readouterr().out

        _dispatch(app, app.config, _args("alert", action="pause", alert_id=alert.id, version=0))
        assert "version" in capsys.readouterr().out

    def test_status(self, app, capsys):
        """Should print every status section."""
        _dispatch(app, app.config, _args("status", send=False))

        out = capsys.readouterr().out
        assert "Monitoring" in out
        assert "system_health" in out
        assert "Cleanup" in out

    def test_alert_list_and_show(self, app, capsys, saved_filter):
        """Should list alerts by status and show one alert's history."""
        alert = app.state_machine.ensure_alert(saved_filter)
        app.state_machine.pause(alert.id)
        capsys.readouterr()

        _dispatch(app, app.config, _args("alert", action="list", alert_id=None, status=None))
        assert f"ID: {alert.id}, filter {saved_filter.id}, paused" in capsys.readouterr().out

        _dispatch(app, app.config, _args("alert", action="list", alert_id=None, status="active"))
        assert capsys.readouterr().out == ""

        _dispatch(app, app.config, _args("alert", action="show", alert_id=alert.id, version=None))
        out = capsys.readouterr().out
        assert "active -> paused" in out

    def test_alert_action_needs_id(self, app, capsys):
        """Should refuse a state change without an alert ID."""
        _dispatch(app, app.config, _args("alert", action="pause", alert_id=None, version=None))
        assert "needs an alert ID" in capsys.readouterr().out

    def test_run_schedules_maintenance(self, app):
        """Should run cleanup and analysis from the poll loop and record them."""
        assert app.scheduler.run_periodic_jobs() == ["cleanup", "analysis"]
        assert app.status.cleanup_status()["last_run_at"] is not None
        assert app.status.analysis_status()["last_run_at"] is not None
