"""Job pipeline engine.

One `JobPipeline` instance runs exactly one job:

    RECEIVED -> VALIDATED -> RUNNING -> SUCCEEDED | FAILED

- backup:  target `backup`  --pipe-->  store `store`   (restore key from store)
- restore: store `retrieve` --pipe-->  target `restore`

Both stages run concurrently, bridged by a bounded `StreamBridge`. The first
failure observed is the job's error; later ones are attached as `secondary`.
Every subprocess is reaped before `run()` returns or raises.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from shieldagent.core.config import AgentSettings
from shieldagent.core.errors import (
    AgentError,
    ConfigurationError,
    JobCancelled,
    PipelineError,
    StageError,
)
from shieldagent.core.logging import log_event
from shieldagent.core.plugins.base import PluginInfo
from shieldagent.core.plugins.invoker import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_DIAGNOSTICS_LIMIT,
    DEFAULT_KILL_GRACE,
    DiagnosticCallback,
    InvocationResult,
    PluginInvocation,
    StdoutMode,
    StreamBridge,
    invoke,
)
from shieldagent.core.plugins.registry import PluginRegistry
from shieldagent.domain.enums import (
    InvocationOutcome,
    JobOperation,
    JobState,
    JobStatus,
    PluginOperation,
    Stage,
)
from shieldagent.schemas.requests import JobOutcome, JobRequest

logger = logging.getLogger(__name__)


class JobPipeline:
    """Runs one job request through its target and store plugins."""

    def __init__(
        self,
        request: JobRequest,
        registry: PluginRegistry,
        *,
        job_id: Optional[str] = None,
        on_diagnostic: Optional[DiagnosticCallback] = None,
        cancel: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
        validate_endpoints: bool = False,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        diagnostics_limit: int = DEFAULT_DIAGNOSTICS_LIMIT,
        kill_grace: float = DEFAULT_KILL_GRACE,
    ) -> None:
        self.request = request
        self.registry = registry
        self.job_id = job_id or uuid.uuid4().hex[:12]
        self.on_diagnostic = on_diagnostic
        self.cancel = cancel
        self.timeout = timeout
        self.validate_endpoints = validate_endpoints
        self.chunk_size = chunk_size
        self.diagnostics_limit = diagnostics_limit
        self.kill_grace = kill_grace

        self.state = JobState.RECEIVED
        self.error: Optional[AgentError] = None
        self.outcome: Optional[JobOutcome] = None
        self.bridge: Optional[StreamBridge] = None
        self.duration: Optional[float] = None
        self._cancel_reason: Optional[str] = None

    @classmethod
    def from_settings(cls, request: JobRequest, registry: PluginRegistry, settings: AgentSettings, **kwargs) -> "JobPipeline":
        kwargs.setdefault("timeout", settings.job_timeout)
        kwargs.setdefault("validate_endpoints", settings.validate_endpoints)
        kwargs.setdefault("diagnostics_limit", settings.diagnostics_limit)
        kwargs.setdefault("kill_grace", settings.kill_grace)
        return cls(request, registry, **kwargs)

    @property
    def bytes_transferred(self) -> int:
        return self.bridge.transferred if self.bridge is not None else 0

    def _transition(self, state: JobState) -> None:
        log_event(
            logger,
            "job_state",
            job_id=self.job_id,
            from_state=self.state.value,
            to_state=state.value,
        )
        self.state = state

    async def run(self) -> JobOutcome:
        """Execute the job.

        Returns the succeeded JobOutcome; raises the job's primary
        AgentError (ConfigurationError or a StageError) on failure, after
        recording a failed outcome on `self.outcome`.
        """
        if self.state is not JobState.RECEIVED:
            raise RuntimeError(f"job {self.job_id} already ran (state={self.state.value})")

        request = self.request
        started = time.monotonic()
        log_event(logger, "job_received", job_id=self.job_id, request=request.summary())
        restore_key: Optional[str] = None
        try:
            if self.cancel is not None and self.cancel.is_set():
                raise JobCancelled("job cancelled before start")
            target_exe = self.registry.resolve(request.target_plugin)
            store_exe = self.registry.resolve(request.store_plugin)
            if self.validate_endpoints:
                await self._preflight(target_exe, store_exe)
            self._transition(JobState.VALIDATED)

            self._transition(JobState.RUNNING)
            if request.operation is JobOperation.BACKUP:
                restore_key = await self._backup(target_exe, store_exe)
            else:
                await self._restore(target_exe, store_exe)
        except AgentError as exc:
            self.duration = round(time.monotonic() - started, 3)
            self.error = exc
            self.outcome = JobOutcome.failed(
                exc,
                operation=request.operation,
                bytes_transferred=self.bytes_transferred,
                duration_seconds=self.duration,
            )
            self._transition(JobState.FAILED)
            log_event(
                logger,
                "job_failed",
                logging.WARNING,
                job_id=self.job_id,
                error=type(exc).__name__,
                message=exc.message,
                stage=getattr(exc, "stage", None),
            )
            raise

        self.duration = round(time.monotonic() - started, 3)
        self.outcome = JobOutcome(
            status=JobStatus.SUCCEEDED,
            operation=request.operation,
            restore_key=restore_key,
            bytes_transferred=self.bytes_transferred,
            duration_seconds=self.duration,
        )
        self._transition(JobState.SUCCEEDED)
        log_event(
            logger,
            "job_succeeded",
            job_id=self.job_id,
            bytes=self.bytes_transferred,
            duration=self.duration,
            restore_key=restore_key,
        )
        return self.outcome

    def _invocation(
        self,
        executable: Path,
        operation: PluginOperation,
        stage: Stage,
        *,
        key: Optional[str] = None,
        stdin: bool = False,
        stdout: StdoutMode = StdoutMode.CAPTURE,
    ) -> PluginInvocation:
        if stage is Stage.TARGET:
            plugin, endpoint = self.request.target_plugin, self.request.target_endpoint
        else:
            plugin, endpoint = self.request.store_plugin, self.request.store_endpoint
        return PluginInvocation(
            executable,
            operation,
            endpoint,
            key=key,
            plugin=plugin,
            stage=stage.value,
            stdin=stdin,
            stdout=stdout,
            on_diagnostic=self.on_diagnostic,
            diagnostics_limit=self.diagnostics_limit,
            kill_grace=self.kill_grace,
        )

    async def _backup(self, target_exe: Path, store_exe: Path) -> Optional[str]:
        producer = self._invocation(target_exe, PluginOperation.BACKUP, Stage.TARGET, stdout=StdoutMode.PIPE)
        consumer = self._invocation(store_exe, PluginOperation.STORE, Stage.STORE, stdin=True)
        try:
            _, stored = await self._stream(producer, consumer)
        except StageError:
            stored = consumer.last_result
            if stored is not None and stored.ok and stored.result:
                await self._purge_partial(store_exe, stored.result)
            raise
        return stored.result

    async def _restore(self, target_exe: Path, store_exe: Path) -> None:
        producer = self._invocation(
            store_exe,
            PluginOperation.RETRIEVE,
            Stage.STORE,
            key=self.request.restore_key,
            stdout=StdoutMode.PIPE,
        )
        consumer = self._invocation(
            target_exe, PluginOperation.RESTORE, Stage.TARGET, stdin=True, stdout=StdoutMode.DISCARD
        )
        await self._stream(producer, consumer)

    async def _stream(
        self, producer: PluginInvocation, consumer: PluginInvocation
    ) -> Tuple[InvocationResult, InvocationResult]:
        """Run producer and consumer concurrently, bridged by a pipe."""
        failures: List[StageError] = []
        stopped: List[StageError] = []
        bridge_errors: List[StageError] = []

        await producer.start()
        try:
            await consumer.start()
        except ConfigurationError:
            await self._reap(producer)
            raise

        self.bridge = StreamBridge(
            producer.stdout,
            consumer.stdin,
            chunk_size=self.chunk_size,
            source=producer.label,
            sink=consumer.label,
        )

        async def watch(invocation: PluginInvocation, upstream: Optional[PluginInvocation]) -> InvocationResult:
            result = await invocation.wait()
            exc = result.error()
            if exc is not None:
                (stopped if result.terminated else failures).append(exc)
            if upstream is not None and not result.ok:
                # consumer is gone; nothing will read what upstream produces
                await upstream.terminate()
            return result

        async def bridge() -> None:
            assert self.bridge is not None
            try:
                await self.bridge.run()
            except PipelineError as exc:
                bridge_errors.append(exc)
                await producer.terminate()

        guard = None
        if self.cancel is not None or self.timeout is not None:
            guard = asyncio.create_task(self._guard(producer, consumer))
        try:
            produced, consumed, _ = await asyncio.gather(
                watch(producer, None),
                watch(consumer, producer),
                bridge(),
            )
        finally:
            if guard is not None:
                guard.cancel()
                await asyncio.gather(guard, return_exceptions=True)
            await self._reap(producer, consumer)

        log_event(
            logger,
            "job_stream_finished",
            job_id=self.job_id,
            bytes=self.bytes_transferred,
            peak_buffered=self.bridge.peak_buffered,
            producer=produced.outcome.value,
            consumer=consumed.outcome.value,
        )

        if self._cancel_reason is not None:
            primary: StageError = JobCancelled(f"job {self._cancel_reason}")
            primary.secondary = failures + bridge_errors + stopped
            raise primary
        ordered = failures + bridge_errors + stopped
        if ordered:
            primary = ordered[0]
            primary.secondary = ordered[1:]
            raise primary
        return produced, consumed

    async def _guard(self, *invocations: PluginInvocation) -> None:
        """Stop every stage once the cancel event fires or the deadline passes."""
        waiter = self.cancel.wait() if self.cancel is not None else asyncio.get_running_loop().create_future()
        try:
            await asyncio.wait_for(waiter, timeout=self.timeout)
            reason = "cancelled"
        except asyncio.TimeoutError:
            reason = f"timed out after {self.timeout}s"
        self._cancel_reason = reason
        log_event(logger, "job_stopping", logging.WARNING, job_id=self.job_id, reason=reason)
        await asyncio.gather(*(invocation.terminate() for invocation in invocations))

    async def _reap(self, *invocations: PluginInvocation) -> None:
        for invocation in invocations:
            if not invocation.started:
                continue
            if invocation.returncode is None:
                await invocation.terminate()
            await invocation.wait()

    async def _preflight(self, target_exe: Path, store_exe: Path) -> None:
        """Check plugin features with `meta` and endpoints with `validate`."""
        checks = (
            (Stage.TARGET, target_exe, self.request.target_plugin, self.request.target_endpoint),
            (Stage.STORE, store_exe, self.request.store_plugin, self.request.store_endpoint),
        )
        for stage, executable, name, endpoint in checks:
            meta = await invoke(
                executable,
                PluginOperation.META,
                plugin=name,
                stage=stage.value,
                diagnostics_limit=self.diagnostics_limit,
                kill_grace=self.kill_grace,
            )
            if not meta.ok:
                raise ConfigurationError(f"{stage.value} plugin {name!r} failed to describe itself (meta exited {meta.exit_status})")
            try:
                info = PluginInfo.model_validate_json("\n".join(meta.output))
            except PydanticValidationError as exc:
                raise ConfigurationError(f"{stage.value} plugin {name!r} printed invalid metadata: {exc}") from exc
            capable = info.features.can_target() if stage is Stage.TARGET else info.features.can_store()
            if not capable:
                raise ConfigurationError(f"plugin {name!r} cannot act as a {stage.value}")

            result = await invoke(
                executable,
                PluginOperation.VALIDATE,
                endpoint,
                plugin=name,
                stage=stage.value,
                on_diagnostic=self.on_diagnostic,
                diagnostics_limit=self.diagnostics_limit,
                kill_grace=self.kill_grace,
            )
            if result.outcome is InvocationOutcome.UNIMPLEMENTED:
                logger.info("plugin_validate_skipped | job_id=%s plugin=%s", self.job_id, name)
                continue
            if not result.ok:
                detail = "; ".join((result.output + result.diagnostics)[-5:])
                raise ConfigurationError(f"{stage.value} plugin {name!r} rejected its endpoint configuration: {detail}")

    async def _purge_partial(self, store_exe: Path, key: str) -> None:
        """Best-effort removal of an artifact stored by a failed backup."""
        try:
            result = await invoke(
                store_exe,
                PluginOperation.PURGE,
                self.request.store_endpoint,
                key=key,
                plugin=self.request.store_plugin,
                stage=Stage.STORE.value,
                capture=False,
                diagnostics_limit=self.diagnostics_limit,
                kill_grace=self.kill_grace,
            )
            result.raise_for_status()
        except AgentError as exc:
            logger.warning("partial_artifact_purge_failed | job_id=%s key=%s error=%s", self.job_id, key, exc)
            return
        log_event(logger, "partial_artifact_purged", job_id=self.job_id, key=key)
