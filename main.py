"""
Fleet Reports - Main Entry Point

Commands:
1. Report:  python main.py stops --from 2024-03-01T00:00:00Z --to 2024-03-04T00:00:00Z --device 12
2. Plan:    python main.py trips --from ... --to ... --plan
3. Route:   python main.py route --device 12 --from ... --to ...
4. Export:  python main.py export stops --from ... --to ... -o stops.xlsx
5. Engine:  python main.py engine --device 12 --stop
6. Web:     python main.py web --port 8000

Report ranges are split on calendar days of the configured local offset
(reports.local_day_offset_hours) and fetched concurrently.
"""

import argparse
import logging
import sys
from typing import List, Optional

from fleet_reports.api.client import ReportClient, ReportRequestError
from fleet_reports.api.fetcher import BucketFetchFailed, ConcurrentRangeFetcher
from fleet_reports.config import ConfigError, load_config, setup_logging
from fleet_reports.output.table import records_to_frame, render_text, write_table
from fleet_reports.reports.buckets import InvalidRange, local_date, parse_instant
from fleet_reports.reports.kinds import REPORT_KINDS, RoutePosition, get_report_kind

logger = logging.getLogger('main')


def _add_range_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--from', dest='from_date', required=True,
                        help='Range start, ISO-8601 (e.g. 2024-03-01T00:00:00Z)')
    parser.add_argument('--to', dest='to_date', required=True,
                        help='Range end, ISO-8601')


def _add_filter_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--device', dest='device_ids', type=int, action='append', default=[],
                        help='Device id (repeatable)')
    parser.add_argument('--group', dest='group_ids', type=int, action='append', default=[],
                        help='Group id (repeatable)')


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Fleet Reports - local-day bucketed stops/trips reports',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py stops --from 2024-03-01T00:00:00Z --to 2024-03-04T00:00:00Z --device 12
  python main.py trips --from ... --to ... --group 3 -o trips.xlsx
  python main.py stops --from ... --to ... --plan
  python main.py engine --device 12 --stop
  python main.py web --port 3000
        """
    )

    parser.add_argument(
        '-c', '--config',
        type=str,
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Debug logging'
    )

    sub = parser.add_subparsers(dest='command', required=True)

    for name in REPORT_KINDS:
        report = sub.add_parser(name, help=f'{name.capitalize()} report')
        _add_range_args(report)
        _add_filter_args(report)
        report.add_argument('--columns', type=str,
                            help='Comma-separated column keys (default: report defaults)')
        report.add_argument('-o', '--output', type=str,
                            help='Write table to .csv or .xlsx instead of printing')
        report.add_argument('--plan', action='store_true',
                            help='Only print the bucket plan, do not fetch')

    route = sub.add_parser('route', help='Positions of one device')
    route.add_argument('--device', dest='device_id', type=int, required=True)
    _add_range_args(route)

    export = sub.add_parser('export', help='Download backend XLSX export (whole range, not split)')
    export.add_argument('report', choices=sorted(REPORT_KINDS))
    _add_range_args(export)
    _add_filter_args(export)
    export.add_argument('-o', '--output', type=str, required=True, help='Target .xlsx file')

    engine = sub.add_parser('engine', help='Stop or resume a device engine')
    engine.add_argument('--device', dest='device_id', type=int, required=True)
    action = engine.add_mutually_exclusive_group(required=True)
    action.add_argument('--stop', action='store_true', help='Send engineStop')
    action.add_argument('--start', action='store_true', help='Send engineResume')
    engine.add_argument('-y', '--yes', action='store_true', help='Do not ask for confirmation')

    web = sub.add_parser('web', help='Run the web gateway')
    web.add_argument('--host', type=str, default='0.0.0.0', help='Host (default: 0.0.0.0)')
    web.add_argument('--port', type=int, default=8000, help='Port (default: 8000)')

    return parser.parse_args(argv)


def run_report(args: argparse.Namespace, fetcher: ConcurrentRangeFetcher) -> int:
    kind = get_report_kind(args.command)
    from_dt = parse_instant(args.from_date)
    to_dt = parse_instant(args.to_date)

    if args.plan:
        buckets = fetcher.plan(from_dt, to_dt)
        print(f"{len(buckets)} bucket(s):")
        for i, bucket in enumerate(buckets, 1):
            print(f"  {i}. {local_date(bucket.start, fetcher.offset)}  {bucket}")
        return 0

    columns = [c.strip() for c in args.columns.split(',') if c.strip()] if args.columns else None
    if columns:
        kind.validate_columns(columns)

    records = fetcher.run_report(kind, args.device_ids, args.group_ids, from_dt, to_dt)
    frame = records_to_frame(records, kind, columns, offset=fetcher.offset)

    if args.output:
        path = write_table(frame, args.output)
        print(f"Saved {len(frame)} {kind.name} record(s): {path}")
    else:
        print(render_text(frame))
    return 0


def run_route(args: argparse.Namespace, client: ReportClient) -> int:
    raw = client.get_route(args.device_id, parse_instant(args.from_date), parse_instant(args.to_date))
    positions = [RoutePosition.model_validate(p) for p in raw]
    print(f"{len(positions)} position(s)")
    for p in positions:
        print(f"  {p.fixTime}  {p.latitude:.6f}, {p.longitude:.6f}  {p.speed or 0:.1f} kn")
    return 0


def run_export(args: argparse.Namespace, client: ReportClient) -> int:
    kind = get_report_kind(args.report)
    from_dt = parse_instant(args.from_date)
    to_dt = parse_instant(args.to_date)
    if from_dt > to_dt:
        raise InvalidRange(from_dt, to_dt)

    path = client.download_export(kind.export_path, from_dt, to_dt, args.device_ids, args.group_ids, args.output)
    print(f"Saved: {path}")
    return 0


def run_engine(args: argparse.Namespace, client: ReportClient, input_fn=input) -> int:
    """Confirm, then send the command."""
    ignition_on = args.stop
    action = 'stop' if ignition_on else 'start'

    if not args.yes:
        answer = input_fn(f"{action.capitalize()} engine of device {args.device_id}? [y/N]: ").strip().lower()
        if answer not in ('y', 'yes'):
            print("Cancelled.")
            return 0

    client.send_engine_command(args.device_id, ignition_on)
    print(f"Engine {action} command sent to device {args.device_id}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    setup_logging('DEBUG' if args.verbose else config.log_level)

    client = ReportClient(config)
    fetcher = ConcurrentRangeFetcher.from_config(config, client)

    try:
        if args.command in REPORT_KINDS:
            return run_report(args, fetcher)
        if args.command == 'route':
            return run_route(args, client)
        if args.command == 'export':
            return run_export(args, client)
        if args.command == 'engine':
            return run_engine(args, client)
        if args.command == 'web':
            from fleet_reports.web.server import run_server
            run_server(fetcher, host=args.host, port=args.port)
            return 0
    except (InvalidRange, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except BucketFetchFailed as e:
        print(f"Error: report request for {e.bucket} failed: {e.cause}", file=sys.stderr)
        return 1
    except ReportRequestError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        client.close()

    return 1


if __name__ == "__main__":
    sys.exit(main())
