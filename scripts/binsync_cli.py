#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from typing import Any
from urllib import error, request


def _http_json(method: str, url: str, payload: dict[str, Any] | None, timeout: float) -> Any:
    data = None
    headers = {"Content-Type": "application/json"}
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
    req = request.Request(url=url, method=method, data=data, headers=headers)
    with request.urlopen(req, timeout=timeout) as resp:
        body = resp.read().decode("utf-8")
        return json.loads(body) if body else None


def call(args: argparse.Namespace, method: str, path: str, payload: dict[str, Any] | None = None) -> tuple[bool, Any]:
    url = f"{args.api_base}{path}"
    try:
        return True, _http_json(method, url, payload, args.timeout)
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="ignore")
        return False, f"HTTP {exc.code}: {detail or exc.reason}"
    except Exception as exc:
        return False, f"Request error: {exc}"


def print_status(bins: list[dict[str, Any]]) -> None:
    print("\nBin Status")
    for row in bins:
        sensor = row.get("sensor_id") or "-"
        print(
            f"  {row.get('id')} | {row.get('status')} | fill={float(row.get('fill_level', 0.0)):.1f}% | "
            f"temp={row.get('temperature')} | sensor={sensor} | {row.get('location')}"
        )
    print("")


def print_collection(item: dict[str, Any]) -> None:
    after = item.get("fill_after")
    after_text = "pending" if after is None else f"{after:.1f}%"
    print(
        f"  {item['id']} | bin={item['bin_id']} | driver={item['driver_id']} | "
        f"before={item['fill_before']:.1f}% after={after_text} | {item['verification']}"
    )


def run(args: argparse.Namespace) -> int:
    if args.command == "status":
        ok, result = call(args, "GET", "/api/bins")
        if ok:
            print_status(result)
    elif args.command == "collect":
        payload = {"bin_id": args.bin_id, "driver_id": args.driver_id, "route_id": args.route_id}
        ok, result = call(args, "POST", "/api/collections", payload)
        if ok:
            print_collection(result)
    elif args.command == "reading":
        payload = {
            "fill_level": args.fill,
            "distance_cm": args.distance,
            "temperature": args.temperature,
            "battery_level": args.battery,
        }
        ok, result = call(args, "POST", f"/api/bins/{args.bin_id}/readings", payload)
        if ok:
            print_status([result])
    elif args.command == "calibrate":
        if args.empty_cm <= args.full_cm:
            print("Empty distance must be larger than full distance.", file=sys.stderr)
            return 2
        payload = {"calibration": {"empty_distance_cm": args.empty_cm, "full_distance_cm": args.full_cm}}
        ok, result = call(args, "PATCH", f"/api/bins/{args.bin_id}", payload)
        if ok:
            print(f"[ok] {args.bin_id} calibrated: {result['calibration']}")
    elif args.command == "alerts":
        ok, result = call(args, "GET", "/api/alerts")
        if ok:
            for alert in result:
                print(f"  {alert['id']} | {alert['priority']} | {alert['type']} | {alert['message']}")
    elif args.command == "dismiss":
        ok, result = call(args, "POST", f"/api/alerts/{args.alert_id}/dismiss")
        if ok:
            print(f"[ok] dismissed {result['id']}")
    elif args.command == "trigger":
        ok, result = call(args, "POST", f"/api/pipelines/{args.name}/trigger")
        if ok:
            print(json.dumps(result, indent=2))
    else:
        ok, result = call(args, "GET", f"/api/reports/{args.report_type}")
        if ok:
            print(json.dumps(result, indent=2))

    if not ok:
        print(f"[error] {result}", file=sys.stderr)
        return 1
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Operator CLI for the bin sync engine.")
    parser.add_argument("--api-base", default="http://localhost:8000", help="Backend API base URL")
    parser.add_argument("--timeout", type=float, default=5.0, help="HTTP timeout seconds")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show every bin")

    collect = sub.add_parser("collect", help="Report a collection")
    collect.add_argument("bin_id")
    collect.add_argument("driver_id")
    collect.add_argument("--route-id", default=None)

    reading = sub.add_parser("reading", help="Push a sensor reading")
    reading.add_argument("bin_id")
    reading.add_argument("--fill", type=float, default=None)
    reading.add_argument("--distance", type=float, default=None, help="Ultrasonic distance in cm")
    reading.add_argument("--temperature", type=float, default=None)
    reading.add_argument("--battery", type=float, default=None)

    calibrate = sub.add_parser("calibrate", help="Set a bin's empty/full sensor distances")
    calibrate.add_argument("bin_id")
    calibrate.add_argument("--empty-cm", type=float, required=True, help="Distance when the bin is empty")
    calibrate.add_argument("--full-cm", type=float, required=True, help="Distance when the bin is full")

    sub.add_parser("alerts", help="List active alerts")

    dismiss = sub.add_parser("dismiss", help="Dismiss an alert")
    dismiss.add_argument("alert_id")

    trigger = sub.add_parser("trigger", help="Run one pipeline tick now")
    trigger.add_argument("name", choices=["bins", "routes", "sensors", "collections", "performance"])

    report = sub.add_parser("report", help="Print a report")
    report.add_argument("report_type", choices=["performance", "predictions", "optimizations"])

    return parser.parse_args(argv)


def main() -> None:
    args = parse_args()
    raise SystemExit(run(args))


if __name__ == "__main__":
    main()
