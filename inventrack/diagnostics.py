"""Operator tooling for checking SQL Server reachability and credentials.

Nothing here is on the request path for normal API traffic; the
``/api/database/*`` routes and ``scripts/check_connection.py`` call into it.
"""
import logging
import re
import socket
import subprocess
import time
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .connections import ConnectionManager, EngineFactory, build_url, run_query, sqlserver_engine_factory
from .errors import CONNECTION_REFUSED, DNS_FAILURE, classify_error

log = logging.getLogger(__name__)

SERVER_NAME_REGEX = re.compile(r"^[a-zA-Z0-9\-_\\.]+$")
VERSION_QUERIES = {
    "mssql": "SELECT @@VERSION AS version, @@SERVERNAME AS server_name",
    "sqlite": "SELECT sqlite_version() AS version, 'sqlite' AS server_name",
}
SQL_SERVER_PORT = 1433
SQL_BROWSER_PORT = 1434


class ConnectionTestParams(BaseModel):
    server: str
    database: str
    uid: str
    pwd: str
    port: Optional[int] = None
    encrypt: Optional[bool] = None
    trust_server_certificate: Optional[bool] = None
    connect_timeout: int = Field(15, ge=1, le=300)


class QueryParams(ConnectionTestParams):
    query: str = Field(min_length=1)


class ConnectionTestResult(BaseModel):
    success: bool
    message: str
    connection_time_ms: Optional[int] = None
    server_info: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


def split_server(server: str) -> Tuple[str, str]:
    host, _, instance = server.partition("\\")
    return host, instance


def validate_connection_params(params: ConnectionTestParams) -> Tuple[bool, List[str]]:
    errors = []
    if not params.server.strip():
        errors.append("Server name is required")
    if not params.database.strip():
        errors.append("Database name is required")
    if not params.uid.strip():
        errors.append("Username (UID) is required")
    if not params.pwd.strip():
        errors.append("Password (PWD) is required")
    if params.server and not SERVER_NAME_REGEX.match(params.server):
        errors.append("Server name contains invalid characters")
    return not errors, errors


def _open(params: ConnectionTestParams, settings: Settings, engine_factory: Optional[EngineFactory]) -> Engine:
    if engine_factory is None:
        engine_factory = sqlserver_engine_factory(settings.model_copy(update={"connect_timeout": params.connect_timeout}), pool_size=1)
    url = build_url(
        settings,
        params.uid,
        params.pwd,
        server=params.server,
        database=params.database,
        port=params.port,
        encrypt=params.encrypt,
        trust_server_certificate=params.trust_server_certificate,
    )
    return engine_factory(url)


def _table_access(engine: Engine) -> str:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1 FROM users WHERE 1 = 0"))
        return "Full access to users table"
    except SQLAlchemyError as exc:
        message = str(exc).lower()
        if "invalid object name" in message or "no such table" in message:
            return "Users table not found"
        if "permission" in message:
            return "Limited permissions (no access to users table)"
        return f"Table access error: {exc}"


def test_database_connection(params: ConnectionTestParams, settings: Settings,
                             engine_factory: Optional[EngineFactory] = None) -> ConnectionTestResult:
    started = time.monotonic()
    details = {"server": params.server, "database": params.database, "user": params.uid}
    engine = None
    log.info("Testing connection to %s as %s", params.server, params.uid)
    try:
        engine = _open(params, settings, engine_factory)
        query = VERSION_QUERIES.get(engine.dialect.name, "SELECT 1 AS version")
        with engine.connect() as conn:
            server_info = dict(conn.execute(text(query)).mappings().first() or {})
        elapsed = int((time.monotonic() - started) * 1000)
        details["table_access"] = _table_access(engine)
        details["connection_time"] = f"{elapsed}ms"
        return ConnectionTestResult(
            success=True,
            message=f"Connection successful to {params.server}",
            connection_time_ms=elapsed,
            server_info=server_info,
            details=details,
        )
    except SQLAlchemyError as exc:
        elapsed = int((time.monotonic() - started) * 1000)
        failure = classify_error(exc)
        log.error("Connection to %s failed: %s", params.server, failure.category)
        details.update(
            error_category=failure.category,
            troubleshooting=failure.troubleshooting,
            connection_time=f"{elapsed}ms",
        )
        if failure.category in (DNS_FAILURE, CONNECTION_REFUSED):
            details["network_diagnostics"] = run_network_diagnostics(params.server)
        return ConnectionTestResult(
            success=False,
            message=failure.message,
            connection_time_ms=elapsed,
            details=details,
            error=failure.detail,
        )
    finally:
        if engine is not None:
            engine.dispose()


def execute_query(params: QueryParams, settings: Settings, engine_factory: Optional[EngineFactory] = None) -> dict:
    engine = None
    try:
        engine = _open(params, settings, engine_factory)
        result = run_query(engine, params.query)
        return {
            "success": True,
            "message": f"Query executed, {result.rows_affected} row(s)",
            "columns": result.columns,
            "rows": result.rows,
            "row_count": result.rows_affected,
        }
    except SQLAlchemyError as exc:
        failure = classify_error(exc, prefix="Query failed")
        log.error("Diagnostic query failed: %s", failure.detail)
        return failure.as_dict()
    finally:
        if engine is not None:
            engine.dispose()


def preset_connections(settings: Settings) -> List[Tuple[str, ConnectionTestParams]]:
    presets = [("Authentication user", settings.auth_user, settings.auth_password)]
    for role, password in settings.role_passwords.items():
        presets.append((f"{role.capitalize()} role", role, password))
    return [
        (name, ConnectionTestParams(
            server=settings.sql_server_host,
            database=settings.sql_server_database,
            uid=uid,
            pwd=pwd,
            port=settings.sql_server_port,
        ))
        for name, uid, pwd in presets
    ]


def test_preset_connections(settings: Settings, engine_factory: Optional[EngineFactory] = None) -> List[ConnectionTestResult]:
    results = []
    for name, params in preset_connections(settings):
        result = test_database_connection(params, settings, engine_factory)
        result.message = f"{name}: {result.message}"
        results.append(result)
    return results


def environment_summary(settings: Settings, manager: ConnectionManager) -> dict:
    status = manager.connection_status()
    return {
        "auth_connection_status": "Connected" if status["auth_connection"] else "Disconnected",
        "active_sessions": status["active_sessions"],
        "environment": {
            "storage_backend": settings.storage_backend,
            "server_host": settings.sql_server_host,
            "server_port": settings.sql_server_port,
            "database": settings.sql_server_database,
            "auth_user": settings.auth_user,
            "encrypt": settings.encrypt,
            "trust_server_certificate": settings.trust_server_certificate,
            "connect_timeout": settings.connect_timeout,
            "request_timeout": settings.request_timeout,
        },
        "last_tested_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    }


def check_tcp_port(host: str, port: int, timeout: float) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def ping(host: str, timeout: int = 5) -> dict:
    try:
        completed = subprocess.run(
            ["ping", "-c", "1", "-W", str(timeout), host],
            capture_output=True,
            text=True,
            timeout=timeout + 2,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        return {"success": False, "error": str(exc)}
    if completed.returncode != 0:
        return {"success": False, "error": (completed.stderr or completed.stdout).strip() or "No reply"}
    match = re.search(r"time=(\d+\.?\d*)", completed.stdout)
    return {"success": True, "response_time": float(match.group(1)) if match else None}


def run_network_diagnostics(server: str, timeout: float = 5.0) -> dict:
    host, instance = split_server(server)
    suggestions = []
    diagnostics = {
        "server_name": host,
        "instance_name": instance,
        "dns_resolution": {"success": False},
        "port_test": {"success": False},
        "ping": {"success": False},
        "suggestions": suggestions,
    }

    try:
        address = socket.getaddrinfo(host, None)[0][4][0]
        diagnostics["dns_resolution"] = {"success": True, "ip": address}
    except (socket.gaierror, UnicodeError) as exc:
        diagnostics["dns_resolution"] = {"success": False, "error": str(exc)}
        suggestions.extend([
            "DNS resolution failed. Check if server name is correct",
            "Try using IP address instead of server name",
            "Check network connectivity and DNS settings",
        ])
        if "-" in host:
            suggestions.append("Server names with hyphens sometimes have DNS issues - try IP address")

    diagnostics["ping"] = ping(host, int(timeout))
    if not diagnostics["ping"]["success"]:
        suggestions.extend([
            "Server is not reachable via ping",
            "Verify firewall settings allow ICMP and SQL Server ports",
        ])

    # Named instances are located through the SQL Browser service.
    port = SQL_BROWSER_PORT if instance else SQL_SERVER_PORT
    if check_tcp_port(host, port, timeout):
        diagnostics["port_test"] = {"success": True, "port": port}
    else:
        diagnostics["port_test"] = {"success": False, "port": port, "error": f"Port {port} is closed or filtered"}
        if instance:
            suggestions.extend([
                "SQL Browser service (port 1434) is not responding",
                "Named instances require SQL Browser service to be running",
            ])
        else:
            suggestions.extend([
                f"SQL Server port {port} is not accessible",
                "Check if SQL Server is running and configured to accept TCP connections",
            ])

    if instance:
        suggestions.append("Consider using a specific port instead of dynamic port")
    return diagnostics
