"""Check SQL Server reachability for the configured logins.

Usage:
    python scripts/check_connection.py                # auth login and every role login
    python scripts/check_connection.py --uid viewer --pwd secret
"""
import argparse
import json
import sys

from inventrack import diagnostics
from inventrack.config import configure_logging, load_settings


def print_result(result: diagnostics.ConnectionTestResult) -> None:
    mark = "OK  " if result.success else "FAIL"
    print(f"[{mark}] {result.message}")
    if result.connection_time_ms is not None:
        print(f"       time: {result.connection_time_ms}ms")
    if result.server_info:
        print(f"       server: {result.server_info}")
    if not result.success:
        print(json.dumps(result.details, indent=2, default=str))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--server")
    parser.add_argument("--database")
    parser.add_argument("--uid")
    parser.add_argument("--pwd")
    parser.add_argument("--port", type=int)
    parser.add_argument("--timeout", type=int, default=15)
    args = parser.parse_args(argv)

    settings = load_settings()
    configure_logging(settings.log_level)

    if args.uid:
        params = diagnostics.ConnectionTestParams(
            server=args.server or settings.sql_server_host,
            database=args.database or settings.sql_server_database,
            uid=args.uid,
            pwd=args.pwd or "",
            port=args.port or settings.sql_server_port,
            connect_timeout=args.timeout,
        )
        valid, errors = diagnostics.validate_connection_params(params)
        if not valid:
            for error in errors:
                print(f"[FAIL] {error}")
            return 2
        results = [diagnostics.test_database_connection(params, settings)]
    else:
        results = diagnostics.test_preset_connections(settings)

    for result in results:
        print_result(result)
    return 0 if all(r.success for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
