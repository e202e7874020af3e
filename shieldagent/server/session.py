"""SSH session server.

- One thread per accepted TCP connection.
- Only `session` channels are opened; any other channel type is refused
  with "unknown channel type" and the connection stays usable.
- Only `exec` requests are serviced; the command string is the JSON job
  request. Invalid requests are refused (reason on the channel's stderr),
  other request types are refused by paramiko's defaults.
- A connection runs exactly one job: once it finishes, the outcome is
  written as one JSON line on stdout, the exit status is sent and the
  connection is closed.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import socket
import threading
from typing import Optional, Tuple

import paramiko

from shieldagent.core.config import AgentSettings
from shieldagent.core.errors import AgentError, ConfigurationError, ProtocolError, ValidationError
from shieldagent.core.logging import log_event
from shieldagent.core.plugins.registry import PluginRegistry
from shieldagent.domain.enums import JobStatus
from shieldagent.schemas.requests import ErrorReport, JobOutcome, JobRequest
from shieldagent.server.auth import AuthorizedKeys, load_host_key
from shieldagent.services.pipeline import JobPipeline
from shieldagent.services.protocol import parse_job_request

logger = logging.getLogger(__name__)

SESSION_CHANNEL = "session"
AUTH_TIMEOUT = 30.0
POLL_INTERVAL = 0.2

Job = Tuple[paramiko.Channel, JobRequest]


class AgentSession(paramiko.ServerInterface):
    """paramiko callbacks for one connection (run on the transport thread)."""

    def __init__(self, authorized_keys: AuthorizedKeys, peer: str) -> None:
        self.authorized_keys = authorized_keys
        self.peer = peer
        self.jobs: "queue.Queue[Job]" = queue.Queue()
        self._job_accepted = False
        self._lock = threading.Lock()

    def get_allowed_auths(self, username: str) -> str:
        return "publickey"

    def check_auth_publickey(self, username: str, key: paramiko.PKey) -> int:
        if key in self.authorized_keys:
            log_event(logger, "auth_accepted", peer=self.peer, user=username, key=key.get_fingerprint().hex())
            return paramiko.AUTH_SUCCESSFUL
        log_event(logger, "auth_rejected", logging.WARNING, peer=self.peer, user=username, key=key.get_fingerprint().hex())
        return paramiko.AUTH_FAILED

    def check_channel_request(self, kind: str, chanid: int) -> int:
        if kind == SESSION_CHANNEL:
            return paramiko.OPEN_SUCCEEDED
        log_event(logger, "channel_rejected", logging.WARNING, peer=self.peer, type=kind, reason="unknown channel type")
        return paramiko.OPEN_FAILED_UNKNOWN_CHANNEL_TYPE

    def check_channel_shell_request(self, channel: paramiko.Channel) -> bool:
        log_event(logger, "request_rejected", logging.WARNING, peer=self.peer, type="shell")
        return False

    def check_channel_pty_request(self, channel, term, width, height, pixelwidth, pixelheight, modes) -> bool:
        log_event(logger, "request_rejected", logging.WARNING, peer=self.peer, type="pty-req")
        return False

    def check_channel_exec_request(self, channel: paramiko.Channel, command: bytes) -> bool:
        with self._lock:
            if self._job_accepted:
                self._refuse(channel, "a job is already running on this connection")
                return False
            try:
                request = parse_job_request(command)
            except (ProtocolError, ValidationError) as exc:
                log_event(
                    logger,
                    "agent_request_rejected",
                    logging.WARNING,
                    peer=self.peer,
                    code=exc.code,
                    reason=exc.message,
                )
                logger.debug("agent_request_rejected | peer=%s payload=%r", self.peer, bytes(command))
                self._refuse(channel, exc.message)
                return False
            self._job_accepted = True
        log_event(logger, "agent_request_accepted", peer=self.peer, request=request.summary())
        self.jobs.put((channel, request))
        return True

    def _refuse(self, channel: paramiko.Channel, reason: str) -> None:
        try:
            channel.send_stderr(f"rejected: {reason}\n".encode())
        except (OSError, paramiko.SSHException) as exc:
            logger.debug("reject_notice_failed | peer=%s error=%s", self.peer, exc)


class AgentServer:
    """Accepts SSH connections and runs one job per connection."""

    def __init__(
        self,
        settings: AgentSettings,
        registry: PluginRegistry,
        host_key: paramiko.PKey,
        authorized_keys: AuthorizedKeys,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.host_key = host_key
        self.authorized_keys = authorized_keys
        self._sock: Optional[socket.socket] = None
        self._shutdown = threading.Event()

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> "AgentServer":
        if settings.host_key_file is None:
            raise ConfigurationError("host_key_file is not configured")
        if settings.authorized_keys_file is None:
            raise ConfigurationError("authorized_keys_file is not configured")
        return cls(
            settings,
            PluginRegistry.build(settings.plugin_paths, settings.plugins),
            load_host_key(settings.host_key_file),
            AuthorizedKeys.from_file(settings.authorized_keys_file),
        )

    def bind(self) -> Tuple[str, int]:
        """Open the listening socket; returns the bound (host, port)."""
        host, port = self.settings.listen()
        sock = socket.socket(socket.AF_INET6 if ":" in host else socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(100)
        sock.settimeout(POLL_INTERVAL)
        self._sock = sock
        bound = sock.getsockname()
        return bound[0], bound[1]

    def serve_forever(self) -> None:
        if self._sock is None:
            self.bind()
        assert self._sock is not None
        host, port = self._sock.getsockname()[:2]
        log_event(logger, "agent_listening", address=f"{host}:{port}", plugins=len(self.registry))
        try:
            while not self._shutdown.is_set():
                try:
                    client, address = self._sock.accept()
                except socket.timeout:
                    continue
                except OSError as exc:
                    if self._shutdown.is_set():
                        break
                    logger.error("accept_failed | error=%s", exc)
                    raise
                peer = f"{address[0]}:{address[1]}"
                thread = threading.Thread(
                    target=self.handle_connection,
                    args=(client, peer),
                    name=f"shield-agent-{peer}",
                    daemon=True,
                )
                thread.start()
        finally:
            self._sock.close()
            log_event(logger, "agent_stopped")

    def shutdown(self) -> None:
        self._shutdown.set()

    def handle_connection(self, client: socket.socket, peer: str) -> None:
        transport = paramiko.Transport(client)
        transport.add_server_key(self.host_key)
        session = AgentSession(self.authorized_keys, peer)
        try:
            try:
                transport.start_server(server=session)
            except (paramiko.SSHException, EOFError, OSError) as exc:
                log_event(logger, "handshake_failed", logging.WARNING, peer=peer, error=exc)
                return
            job = self._next_job(transport, session)
            if job is None:
                return
            channel, request = job
            self._execute(transport, channel, request, peer)
        except Exception:  # noqa: BLE001
            logger.exception("connection_error | peer=%s", peer)
        finally:
            transport.close()
            log_event(logger, "connection_closed", peer=peer)

    def _next_job(self, transport: paramiko.Transport, session: AgentSession) -> Optional[Job]:
        waited = 0.0
        while transport.is_active() and not self._shutdown.is_set():
            if not transport.is_authenticated():
                waited += POLL_INTERVAL
                if waited > AUTH_TIMEOUT:
                    log_event(logger, "auth_timeout", logging.WARNING, peer=session.peer)
                    return None
            try:
                return session.jobs.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
        return None

    def _execute(self, transport: paramiko.Transport, channel: paramiko.Channel, request: JobRequest, peer: str) -> None:
        outcome = asyncio.run(self._run_job(transport, channel, request))
        log_event(
            logger,
            "job_finished",
            peer=peer,
            status=outcome.status.value,
            restore_key=outcome.restore_key,
        )
        try:
            channel.sendall(outcome.to_line().encode())
            channel.send_exit_status(0 if outcome.succeeded else 1)
            channel.close()
        except (OSError, paramiko.SSHException) as exc:
            log_event(logger, "job_report_failed", logging.WARNING, peer=peer, error=exc)

    async def _run_job(self, transport: paramiko.Transport, channel: paramiko.Channel, request: JobRequest) -> JobOutcome:
        cancel = asyncio.Event()

        async def relay(stage: str, line: str) -> None:
            await asyncio.to_thread(channel.sendall_stderr, f"{stage}: {line}\n".encode())

        pipeline = JobPipeline.from_settings(
            request,
            self.registry,
            self.settings,
            on_diagnostic=relay,
            cancel=cancel,
        )
        watcher = asyncio.create_task(self._watch_channel(transport, channel, cancel))
        try:
            return await pipeline.run()
        except AgentError as exc:
            if pipeline.outcome is not None:
                return pipeline.outcome
            return JobOutcome(
                status=JobStatus.FAILED,
                operation=request.operation,
                error=ErrorReport.from_error(exc),
            )
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)

    async def _watch_channel(self, transport: paramiko.Transport, channel: paramiko.Channel, cancel: asyncio.Event) -> None:
        """Cancel the job when the caller goes away."""
        while not cancel.is_set():
            if channel.closed or not transport.is_active() or self._shutdown.is_set():
                log_event(logger, "caller_disconnected", logging.WARNING, channel=channel.get_id())
                cancel.set()
                return
            await asyncio.sleep(POLL_INTERVAL)
