"""
CLI commands for Pricewatch.
"""

import argparse
import json
from datetime import date
from typing import Any, Optional

from dotenv import load_dotenv

from pricewatch.config import AppConfig, load_config
from pricewatch.database.connection import Database
from pricewatch.database.models import (
    AlertStatus,
    FlightAlert,
    FlightFilter,
    MonitorFrequency,
    Passengers,
)
from pricewatch.database.repository import FilterRepository
from pricewatch.main import PricewatchApp, setup_logging


def filter_from_dict(data: dict[str, Any]) -> FlightFilter:
    """
    Build a FlightFilter from its JSON representation.

    Raises:
        ValueError: If a required field is missing or malformed
    """
    try:
        return FlightFilter(
            user_id=int(data["user_id"]),
            name=data["name"],
            origins=[o.upper() for o in data["origins"]],
            destinations=[d.upper() for d in data["destinations"]],
            departure_dates=[date.fromisoformat(d) for d in data["departure_dates"]],
            target_price=float(data["target_price"]),
            trip_type=data.get("trip_type", "one-way"),
            return_dates=[date.fromisoformat(d) for d in data.get("return_dates", [])],
            date_flexibility=int(data.get("date_flexibility", 3)),
            cabin_class=data.get("cabin_class", "economy"),
            passengers=Passengers(**data.get("passengers", {})),
            max_stops=data.get("max_stops", "any"),
            airline_preferences=data.get("airline_preferences", []),
            preferred_departure_times=data.get("preferred_departure_times", []),
            currency=data.get("currency", "USD").upper(),
            monitor_frequency=MonitorFrequency(data.get("monitor_frequency", "daily")),
            flexibility=data.get("flexibility", {}),
            notification_channels=data.get("notification_channels", {}),
            is_active=bool(data.get("is_active", True)),
        )
    except KeyError as e:
        raise ValueError(f"Missing field: {e.args[0]}") from e
    except TypeError as e:
        raise ValueError(f"Malformed filter: {e}") from e


def add_filter(db: Database, payload: str) -> FlightFilter:
    """Create a filter from a JSON string."""
    repo = FilterRepository(db)
    return repo.create(filter_from_dict(json.loads(payload)))


def _print_dict(data: dict[str, Any], indent: int = 0) -> None:
    pad = "  " * indent
    for key, value in data.items():
        if isinstance(value, dict):
            print(f"{pad}{key}:")
            _print_dict(value, indent + 1)
        else:
            print(f"{pad}{key}: {value}")


def _format_alert(alert: FlightAlert) -> str:
    price = f"{alert.current_price:.2f}" if alert.current_price is not None else "none"
    return (
        f"ID: {alert.id}, filter {alert.filter_id}, {AlertStatus(alert.status).value}, "
        f"target {alert.target_price:.2f}, current {price}, version {alert.version}"
    )


def _alert_action(app: PricewatchApp, action: str, alert_id: int, version: Optional[int]):
    machine = app.state_machine
    handlers = {
        "pause": machine.pause,
        "resume": machine.resume,
        "reset": machine.reset,
        "expire": machine.expire,
    }
    return handlers[action](alert_id, expected_version=version)


def main():
    """CLI entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(description="Pricewatch CLI")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # Poll loop commands
    subparsers.add_parser("run", help="Run the poll loop until interrupted")
    subparsers.add_parser("check", help="Run one poll cycle")

    # Status commands
    status_parser = subparsers.add_parser("status", help="Show service status")
    status_parser.add_argument(
        "--send", action="store_true", help="Post the report to the status webhook"
    )

    # Filter commands
    filter_parser = subparsers.add_parser("filter", help="Filter management")
    filter_subparsers = filter_parser.add_subparsers(dest="action")

    add_filter_parser = filter_subparsers.add_parser("add", help="Add filter")
    add_filter_parser.add_argument("--json", required=True, help="Filter as JSON")

    filter_subparsers.add_parser("list", help="List filters")

    # Alert commands
    alert_parser = subparsers.add_parser("alert", help="Alert management")
    alert_parser.add_argument(
        "action", choices=["list", "show", "pause", "resume", "reset", "expire"]
    )
    alert_parser.add_argument("alert_id", type=int, nargs="?", help="Alert ID")
    alert_parser.add_argument(
        "--version", type=int, help="Only act if the alert is still at this version"
    )
    alert_parser.add_argument(
        "--status", choices=[s.value for s in AlertStatus], help="List only this status"
    )

    # Maintenance commands
    analyze_parser = subparsers.add_parser("analyze", help="Run price trend analysis")
    analyze_parser.add_argument("--days", type=int, help="Analysis window in days")
    subparsers.add_parser("cleanup", help="Delete old history, expire stale alerts")

    # DB commands
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="action")
    db_subparsers.add_parser("migrate", help="Create or update the schema")

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return

    config: AppConfig = load_config(args.config)
    setup_logging(config.advanced.log_level, args.debug)

    app = PricewatchApp(config)
    try:
        _dispatch(app, config, args)
    finally:
        app.close()


def _dispatch(app: PricewatchApp, config: AppConfig, args: argparse.Namespace) -> None:
    # Handle commands
    if args.command == "run":
        app.run_forever()

    elif args.command == "check":
        report = app.run_check()
        print(
            f"Due: {report.due}, triggered: {report.triggered}, "
            f"no data: {report.no_data}, errors: {report.errors}, "
            f"skipped: {report.skipped}"
        )

    elif args.command == "status":
        print("Monitoring")
        _print_dict(app.status.monitoring_status(), 1)
        print("Analysis")
        analysis = app.status.analysis_status()
        print(f"  last_run_at: {analysis['last_run_at']}")
        for route in analysis["routes"]:
            print(f"  {route['route']}: avg {route['average']}, trend {route['trend']}")
        print("Cleanup")
        _print_dict(app.status.cleanup_status(), 1)
        if args.send:
            app.status.send_status_report(config.advanced.status_webhook_url)

    elif args.command == "filter":
        if args.action == "add":
            try:
                created = add_filter(app.db, args.json)
            except ValueError as e:
                print(f"Invalid filter: {e}")
                return
            print(f"Created filter with ID: {created.id}")
        elif args.action == "list":
            for f in app.filter_repo.list_all():
                state = "active" if f.is_active else "inactive"
                print(
                    f"ID: {f.id}, {f.name}: {f.route_description}, "
                    f"target {f.target_price:.2f} {f.currency}, "
                    f"{MonitorFrequency(f.monitor_frequency).value}, {state}"
                )

    elif args.command == "alert":
        if args.action == "list":
            if args.status:
                alerts = app.alert_repo.list_by_status(AlertStatus(args.status))
            else:
                alerts = app.alert_repo.list_all()
            for alert in alerts:
                print(_format_alert(alert))
            return
        if args.alert_id is None:
            print(f"alert {args.action} needs an alert ID")
            return
        if args.action == "show":
            alert = app.alert_repo.get_by_id(args.alert_id)
            if alert is None:
                print(f"Alert {args.alert_id} not found")
                return
            print(_format_alert(alert))
            for t in app.alert_repo.list_transitions(alert.id):
                price = f" at {t.price:.2f}" if t.price is not None else ""
                print(
                    f"  {t.created_at:%Y-%m-%d %H:%M:%S} {t.from_status.value} -> "
                    f"{t.to_status.value}{price}: {t.reason}"
                )
            return
        outcome = _alert_action(app, args.action, args.alert_id, args.version)
        if outcome.success:
            print(f"Alert {args.alert_id}: {outcome.from_status.value} -> {outcome.to_status.value}")
        else:
            print(f"Alert {args.alert_id}: {outcome.error}")

    elif args.command == "analyze":
        days = args.days or config.maintenance.analysis_window_days
        for trend in app.analyzer.analyze(days):
            print(
                f"{trend.route}: {trend.count} prices, avg {trend.average:.2f}, "
                f"min {trend.minimum:.2f}, max {trend.maximum:.2f}, "
                f"volatility {trend.volatility:.1f}%, {trend.trend}"
            )

    elif args.command == "cleanup":
        report = app.cleaner.cleanup()
        print(
            f"Removed {report.history_removed} price records, "
            f"expired {report.alerts_expired} alerts"
        )
        for error in report.errors:
            print(f"Error: {error}")

    elif args.command == "db":
        if args.action == "migrate":
            app.db.initialize()
            print("Migrations applied")


if __name__ == "__main__":
    main()
