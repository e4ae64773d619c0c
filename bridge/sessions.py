"""
Per-connection control workers.

Each vehicle connection gets its own single-thread executor, pipeline and
warm-start slot, so a slow solve for one vehicle never blocks another.
Newer telemetry supersedes older telemetry (cancel-and-replace): a cycle
that is no longer current is skipped or its result discarded.
"""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Mapping, Optional

from control.errors import InputError
from control.mpc_controller import MPCConfig, WarmStart
from control.pipeline import MPCPipeline
from data.formats.data_format import ControlOutput, Telemetry

logger = logging.getLogger(__name__)

DEFAULT_CYCLE_TIMEOUT = 0.3  # seconds


class ConnectionSession:
    """Control loop state owned by one vehicle connection."""

    def __init__(self, session_id: str, config: MPCConfig,
                 cycle_timeout: float = DEFAULT_CYCLE_TIMEOUT,
                 pipeline_factory: Callable[[MPCConfig], MPCPipeline] = MPCPipeline):
        """
        Args:
            session_id: Connection identifier
            config: Shared read-only horizon configuration
            cycle_timeout: Budget for one cycle before the fallback is sent (s)
            pipeline_factory: Builds this session's pipeline from the config
        """
        self.session_id = session_id
        self.config = config
        self.cycle_timeout = cycle_timeout
        self.pipeline = pipeline_factory(config)
        self.warm_start = WarmStart()
        self.last_output: Optional[ControlOutput] = None
        self.cycles = 0
        self.fallbacks = 0
        self.superseded = 0
        self.timeouts = 0
        self._generation = 0
        self._executor = ThreadPoolExecutor(max_workers=1,
                                            thread_name_prefix=f"mpc-{session_id}")

    def warm_up(self) -> None:
        """Build the solver on the session's worker ahead of the first cycle."""
        self._executor.submit(lambda: self.pipeline.optimizer)

    @property
    def generation(self) -> int:
        return self._generation

    def _run_cycle(self, generation: int, telemetry: Telemetry,
                   warm_start: WarmStart) -> Optional[ControlOutput]:
        if generation != self._generation:
            # A newer snapshot arrived while this one was queued.
            return None
        return self.pipeline.run_cycle(telemetry, warm_start=warm_start)

    def _superseded_output(self, telemetry: Optional[Telemetry]) -> ControlOutput:
        if self.last_output is not None:
            return ControlOutput(
                steering_command=self.last_output.steering_command,
                throttle_command=self.last_output.throttle_command,
                status="superseded",
                failure_reason="superseded",
            )
        return self.pipeline.fallback(telemetry, "superseded", status="superseded")

    async def submit(self, telemetry: Telemetry) -> ControlOutput:
        """
        Run one cycle on this session's worker.

        Returns:
            The cycle's output; a "superseded" hold if newer telemetry
            arrived meanwhile; the fallback output on timeout
        """
        self._generation += 1
        generation = self._generation
        self.cycles += 1
        scratch = self.warm_start.copy()

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, self._run_cycle,
                                      generation, telemetry, scratch)
        try:
            output = await asyncio.wait_for(future, timeout=self.cycle_timeout)
        except asyncio.TimeoutError:
            self.timeouts += 1
            self.fallbacks += 1
            logger.warning(
                "[TIMEOUT] session=%s generation=%d exceeded %.3fs",
                self.session_id, generation, self.cycle_timeout,
            )
            output = self.pipeline.fallback(telemetry, "timeout")
            self.last_output = output
            return output

        if output is None or generation != self._generation:
            self.superseded += 1
            logger.debug("session=%s generation=%d superseded", self.session_id, generation)
            return self._superseded_output(telemetry)

        if output.status == "ok":
            self.warm_start = scratch
        else:
            self.fallbacks += 1
        self.last_output = output
        return output

    async def submit_message(self, message: Mapping[str, Any],
                             timestamp: Optional[float] = None) -> ControlOutput:
        """Parse a raw telemetry payload and submit it."""
        try:
            telemetry = Telemetry.from_message(
                message, timestamp=time.time() if timestamp is None else timestamp
            )
        except InputError as e:
            self.fallbacks += 1
            logger.warning("[FALLBACK] session=%s %s: %s", self.session_id, e.reason, e)
            return self.pipeline.fallback(None, e.reason)
        return await self.submit(telemetry)

    def stats(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "cycles": self.cycles,
            "fallbacks": self.fallbacks,
            "superseded": self.superseded,
            "timeouts": self.timeouts,
        }

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


class SessionRegistry:
    """Sessions keyed by connection id. Mutated only from the event loop."""

    def __init__(self, config: MPCConfig, cycle_timeout: float = DEFAULT_CYCLE_TIMEOUT,
                 pipeline_factory: Callable[[MPCConfig], MPCPipeline] = MPCPipeline,
                 warm_up: bool = True):
        self.config = config
        self.cycle_timeout = cycle_timeout
        self.pipeline_factory = pipeline_factory
        self.warm_up = warm_up
        self._sessions: Dict[str, ConnectionSession] = {}

    def get(self, session_id: str) -> Optional[ConnectionSession]:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> ConnectionSession:
        session = self._sessions.get(session_id)
        if session is None:
            session = ConnectionSession(session_id, self.config,
                                        cycle_timeout=self.cycle_timeout,
                                        pipeline_factory=self.pipeline_factory)
            if self.warm_up:
                session.warm_up()
            self._sessions[session_id] = session
            logger.info("Session opened: %s (active=%d)", session_id, len(self._sessions))
        return session

    def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        logger.info("Session closed: %s stats=%s", session_id, session.stats())
        return True

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.close(session_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
