"""
PitBoss — Command Gateway Server

Long-running front end for the governor. Replaces one-process-per-call
with a single resident process speaking the line protocol over stdin/
stdout (the parent multiplexes many callers by request id) or over TCP
(each connection gets its own line buffer; all share one service).

Lifecycle:
  - The GovernorService is built lazily on the first command that needs
    it. Concurrent first callers await the same in-flight init task, so
    exactly one service is ever constructed. A failed init is forgotten
    and the next command retries.
  - ``ping`` never touches the service. ``shutdown`` answers first, then
    the gateway stops reading, closes connections and shuts the service
    down.
  - Every command runs as its own task behind an error boundary with a
    deadline: ``command_timeout_s`` normally, ``init_timeout_s`` while
    cold or for the configured slow commands. A timed-out command keeps
    running in the background; its caller gets TIMEOUT.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import IO, Any

import orjson
import structlog

from pitboss.config import PitBossConfig
from pitboss.gateway.protocol import (
    INTERNAL_ERROR,
    TIMEOUT,
    UNKNOWN_COMMAND,
    LineBuffer,
    ProtocolError,
    Request,
    encode,
    error_response,
    ok_response,
    parse_request,
    ready_message,
)
from pitboss.governor.errors import GovernorError, GovernorInitError, InvalidArguments
from pitboss.governor.service import GovernorService
from pitboss.primitives.common import new_id, utc_now

logger = structlog.get_logger()

Send = Callable[[dict[str, Any]], Awaitable[None]]
Handler = Callable[[GovernorService, Request], Awaitable[Any]]

_READ_CHUNK = 64 * 1024


# ─── Argument Helpers ────────────────────────────────────────────


def _required(request: Request, index: int, name: str) -> str:
    value = request.arg(index)
    if value is None or not value.strip():
        raise InvalidArguments(f"{name} required")
    return value


def _json_arg(value: Any, name: str) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    try:
        parsed = orjson.loads(value)
    except (orjson.JSONDecodeError, TypeError) as exc:
        raise InvalidArguments(f"{name} must be a JSON object") from exc
    if not isinstance(parsed, dict):
        raise InvalidArguments(f"{name} must be a JSON object")
    return parsed


# ─── Command Handlers ────────────────────────────────────────────


async def _detect_issue(service: GovernorService, request: Request) -> Any:
    log_line = request.joined()
    if not log_line:
        raise InvalidArguments("logLine required")
    return await service.detect_issue(log_line) or {"issue": None}


async def _add_issue(service: GovernorService, request: Request) -> Any:
    if not request.args:
        raise InvalidArguments("issue payload required")
    raw = request.args[0] if isinstance(request.args[0], dict) else request.joined()
    return await service.add_issue(_json_arg(raw, "issue payload"))


async def _record_fix_attempt(service: GovernorService, request: Request) -> Any:
    issue_id = _required(request, 0, "issueId")
    fix_method = _required(request, 1, "fixMethod")
    outcome = request.args[2] if len(request.args) > 2 else None
    if outcome is None or outcome == "":
        raise InvalidArguments("result required")
    details = _json_arg(request.args[3], "details") if request.arg(3) else None
    return await service.record_fix_attempt(issue_id, fix_method, outcome, details)


async def _check_fix(service: GovernorService, request: Request) -> Any:
    issue_type = _required(request, 0, "issueType")
    proposed = " ".join(str(a) for a in request.args[1:]).strip()
    if not proposed:
        raise InvalidArguments("proposedFix required")
    return await service.check_fix(issue_type, proposed)


async def _update_health(service: GovernorService, request: Request) -> Any:
    component = _required(request, 0, "component")
    status = _required(request, 1, "status")
    health: float | None = None
    if request.arg(2) is not None:
        try:
            health = float(request.args[2])
        except (TypeError, ValueError) as exc:
            raise InvalidArguments(f"health must be a number, got {request.args[2]!r}") from exc
    return await service.update_health(component, status, health)


async def _query(service: GovernorService, request: Request) -> Any:
    text = request.joined()
    if not text:
        raise InvalidArguments("question required")
    return await service.query(text)


# name → (handler, usage). ping and shutdown are answered by the gateway itself.
_HANDLERS: dict[str, tuple[Handler | None, str]] = {
    "should-start-investigation": (lambda s, r: s.should_start_investigation(), ""),
    "should-pause-unity": (lambda s, r: s.should_pause_unity(), ""),
    "should-resume-unity": (lambda s, r: s.should_resume_unity(), ""),
    "get-investigation-status": (lambda s, r: s.get_investigation_status(), ""),
    "start-investigation": (lambda s, r: s.start_investigation(), ""),
    "complete-investigation": (lambda s, r: s.complete_investigation(), ""),
    "detect-issue": (_detect_issue, "<logLine>"),
    "add-issue": (_add_issue, "<jsonPayload>"),
    "get-active-issues": (lambda s, r: s.get_active_issues(), ""),
    "get-suggested-fixes": (
        lambda s, r: s.get_suggested_fixes(_required(r, 0, "issueId")),
        "<issueId>",
    ),
    "record-fix-attempt": (_record_fix_attempt, "<issueId> <fixMethod> <result> [detailsJson]"),
    "get-live-statistics": (lambda s, r: s.get_live_statistics(), ""),
    "query": (_query, "<freeText>"),
    "get-status-report": (lambda s, r: s.get_status_report(), ""),
    "resolve-issue": (lambda s, r: s.resolve_issue(_required(r, 0, "issueId")), "<issueId|all>"),
    "check-fix": (_check_fix, "<issueType> <proposedFix>"),
    "get-fix-history": (lambda s, r: s.get_fix_history(r.arg(0)), "[issueType]"),
    "update-health": (_update_health, "<component> <status> [health]"),
    "should-start-server": (lambda s, r: s.should_start_server(), ""),
    "should-start-unity": (lambda s, r: s.should_start_unity(), ""),
    "should-start-simulation": (lambda s, r: s.should_start_simulation(), ""),
    "ping": (None, ""),
    "shutdown": (None, ""),
}

COMMANDS: tuple[str, ...] = tuple(
    f"{name} {usage}".strip() for name, (_, usage) in _HANDLERS.items()
)


# ─── Gateway ─────────────────────────────────────────────────────


class CommandGateway:
    """
    Owns the single GovernorService and the transports in front of it.

    ``service_factory`` builds an uninitialized service; the default
    builds one from ``config``.
    """

    def __init__(
        self,
        config: PitBossConfig,
        service_factory: Callable[[], GovernorService] | None = None,
    ) -> None:
        self._config = config
        self._factory = service_factory or (lambda: GovernorService(config))
        self._service: GovernorService | None = None
        self._init_task: asyncio.Task[GovernorService] | None = None
        self._constructions: int = 0

        self._tasks: set[asyncio.Task[Any]] = set()
        self._stopping = asyncio.Event()
        self._closed = False
        self._stdout_lock = asyncio.Lock()
        self._server: asyncio.Server | None = None
        self._writers: set[asyncio.StreamWriter] = set()

        self._started_at = utc_now()
        self._commands: int = 0
        self._errors: int = 0
        self._timeouts: int = 0
        self._logger = logger.bind(system="gateway")

    @property
    def service(self) -> GovernorService | None:
        return self._service

    @property
    def constructions(self) -> int:
        return self._constructions

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    @property
    def port(self) -> int | None:
        """Bound TCP port, once listening."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    # ─── Service Lifecycle ───────────────────────────────────────────

    async def get_service(self) -> GovernorService:
        if self._service is not None:
            return self._service
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._construct(), name="pitboss_governor_init")
        task = self._init_task
        try:
            return await asyncio.shield(task)
        except GovernorInitError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise GovernorInitError(f"Governor initialization failed: {exc}") from exc
        finally:
            if task.done() and (task.cancelled() or task.exception() is not None):
                if self._init_task is task:
                    self._init_task = None

    async def _construct(self) -> GovernorService:
        self._logger.info("governor_init_started")
        service = self._factory()
        try:
            await service.initialize()
        except Exception as exc:
            self._logger.error("governor_init_failed", error=str(exc))
            try:
                await service.shutdown()
            except Exception as cleanup_exc:
                self._logger.warning("governor_init_cleanup_failed", error=str(cleanup_exc))
            raise
        self._constructions += 1
        self._service = service
        self._logger.info("governor_init_complete", constructions=self._constructions)
        return service

    # ─── Dispatch ────────────────────────────────────────────────────

    def _timeout_for(self, command: str) -> float:
        gw = self._config.gateway
        if self._service is None or command in gw.slow_commands:
            return gw.init_timeout_s
        return gw.command_timeout_s

    async def _invoke(self, handler: Handler, request: Request) -> Any:
        service = await self.get_service()
        return await handler(service, request)

    async def execute(self, request: Request) -> dict[str, Any]:
        """Run one request to completion and build its response. Never raises."""
        self._commands += 1
        entry = _HANDLERS.get(request.command)
        if entry is None:
            self._errors += 1
            return error_response(
                request.id,
                f"Unknown command: {request.command}. Available commands: {', '.join(COMMANDS)}",
                UNKNOWN_COMMAND,
            )

        if request.command == "ping":
            return ok_response(request.id, self.ping())
        if request.command == "shutdown":
            return ok_response(request.id, {"success": True, "message": "Shutting down"})

        handler = entry[0]
        assert handler is not None
        timeout = self._timeout_for(request.command)
        work = asyncio.ensure_future(self._invoke(handler, request))
        self._tasks.add(work)
        work.add_done_callback(self._tasks.discard)
        try:
            result = await asyncio.wait_for(asyncio.shield(work), timeout=timeout)
        except asyncio.TimeoutError:
            self._timeouts += 1
            self._errors += 1
            work.add_done_callback(self._late_completion(request.command))
            self._logger.warning("command_timeout", command=request.command, timeout_s=timeout)
            return error_response(
                request.id,
                f"Command {request.command} timed out after {timeout:g}s; outcome unknown",
                TIMEOUT,
            )
        except GovernorError as exc:
            self._errors += 1
            self._logger.info(
                "command_rejected",
                command=request.command,
                code=exc.code,
                error=str(exc),
            )
            return error_response(request.id, str(exc), exc.code)
        except Exception as exc:
            self._errors += 1
            self._logger.exception("command_failed", command=request.command, error=str(exc))
            return error_response(request.id, str(exc) or type(exc).__name__, INTERNAL_ERROR)
        return ok_response(request.id, result)

    def _late_completion(self, command: str) -> Callable[[asyncio.Future[Any]], None]:
        def _done(fut: asyncio.Future[Any]) -> None:
            if fut.cancelled():
                return
            exc = fut.exception()
            self._logger.info(
                "command_finished_after_timeout",
                command=command,
                error=str(exc) if exc is not None else None,
            )

        return _done

    def ping(self) -> dict[str, Any]:
        return {
            "pong": True,
            "pid": os.getpid(),
            "initialized": self._service is not None and self._service.initialized,
            "uptime_s": round((utc_now() - self._started_at).total_seconds(), 1),
            "commands": self._commands,
        }

    # ─── Line Handling ───────────────────────────────────────────────

    def handle_line(self, line: str, send: Send) -> asyncio.Task[None] | None:
        """
        Parse one line and schedule its command. Protocol errors are
        answered immediately; the connection stays usable.
        """
        try:
            request = parse_request(line)
        except ProtocolError as exc:
            self._errors += 1
            self._logger.warning("protocol_error", code=exc.code, error=str(exc))
            task = asyncio.create_task(send(error_response(exc.request_id, str(exc), exc.code)))
        else:
            task = asyncio.create_task(
                self._respond(request, send), name=f"pitboss_cmd_{request.command}"
            )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _respond(self, request: Request, send: Send) -> None:
        response = await self.execute(request)
        try:
            await send(response)
        except (ConnectionError, OSError) as exc:
            self._logger.debug("response_undeliverable", command=request.command, error=str(exc))
        if request.command == "shutdown":
            self.request_shutdown()

    async def _read_loop(self, reader: asyncio.StreamReader, send: Send) -> None:
        buffer = LineBuffer()
        while not self._stopping.is_set():
            chunk = await reader.read(_READ_CHUNK)
            if not chunk:
                break
            for line in buffer.feed(chunk):
                self.handle_line(line, send)
        for line in buffer.flush():
            self.handle_line(line, send)

    async def drain(self) -> None:
        """Wait for every in-flight command to answer."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def request_shutdown(self) -> None:
        if not self._stopping.is_set():
            self._logger.info("gateway_shutdown_requested")
            self._stopping.set()

    async def wait_stopped(self) -> None:
        await self._stopping.wait()

    # ─── Transports ──────────────────────────────────────────────────

    def stdout_sender(self, stream: IO[bytes] | None = None) -> Send:
        out = stream if stream is not None else sys.stdout.buffer

        async def send(message: dict[str, Any]) -> None:
            async with self._stdout_lock:
                out.write(encode(message))
                out.flush()

        return send

    async def serve_stream(self, reader: asyncio.StreamReader, send: Send) -> None:
        """
        Serve one byte stream until shutdown or end of input. End of input
        lets in-flight commands answer, then stops the gateway.
        """
        await send(ready_message(os.getpid()))
        reader_task = asyncio.create_task(self._read_loop(reader, send), name="pitboss_reader")
        stop_task = asyncio.create_task(self._stopping.wait(), name="pitboss_stop_wait")
        try:
            await asyncio.wait({reader_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if reader_task.done() and not self._stopping.is_set():
                reader_task.result()
                self._logger.info("input_closed")
                await self.drain()
                self.request_shutdown()
        finally:
            for task in (reader_task, stop_task):
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            await self.close()

    async def serve_stdio(self) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        self._logger.info("gateway_listening", transport="stdio")
        await self.serve_stream(reader, self.stdout_sender())

    async def start_tcp(self, host: str | None = None, port: int | None = None) -> None:
        gw = self._config.gateway
        self._server = await asyncio.start_server(
            self._handle_connection,
            host or gw.host,
            gw.port if port is None else port,
        )
        self._logger.info("gateway_listening", transport="tcp", host=host or gw.host, port=self.port)

    async def serve_tcp(self, host: str | None = None, port: int | None = None) -> None:
        await self.start_tcp(host, port)
        try:
            await self.stdout_sender()(ready_message(os.getpid()))
            await self._stopping.wait()
        finally:
            await self.close()

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._writers.add(writer)
        peer = writer.get_extra_info("peername")
        log = self._logger.bind(connection_id=new_id(), peer=str(peer))
        lock = asyncio.Lock()
        log.debug("connection_opened")

        async def send(message: dict[str, Any]) -> None:
            async with lock:
                if writer.is_closing():
                    return
                writer.write(encode(message))
                await writer.drain()

        try:
            await self._read_loop(reader, send)
        except (ConnectionError, OSError) as exc:
            log.debug("connection_error", error=str(exc))
        finally:
            self._writers.discard(writer)
            writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()
            log.debug("connection_closed")

    # ─── Shutdown ────────────────────────────────────────────────────

    async def close(self) -> None:
        """Stop listening, drop connections, cancel stragglers, shut the service down."""
        if self._closed:
            return
        self._closed = True
        self._stopping.set()

        if self._server is not None:
            self._server.close()
        for writer in list(self._writers):
            writer.close()
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

        current = asyncio.current_task()
        stragglers = [t for t in self._tasks if t is not current and not t.done()]
        for task in stragglers:
            task.cancel()
        if stragglers:
            await asyncio.gather(*stragglers, return_exceptions=True)

        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            try:
                await self._init_task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                self._logger.warning("governor_init_aborted", error=str(exc))

        if self._service is not None:
            await self._service.shutdown()
            self._service = None

        self._logger.info(
            "gateway_stopped",
            commands=self._commands,
            errors=self._errors,
            timeouts=self._timeouts,
        )

    async def run(self) -> int:
        """Serve on the configured transport until shutdown. Returns an exit code."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self.request_shutdown)

        if self._config.gateway.transport == "tcp":
            await self.serve_tcp()
        else:
            await self.serve_stdio()
        return 0

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "initialized": self._service is not None,
            "constructions": self._constructions,
            "commands": self._commands,
            "errors": self._errors,
            "timeouts": self._timeouts,
            "in_flight": len(self._tasks),
            "connections": len(self._writers),
        }
