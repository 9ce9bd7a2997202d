"""
Scheduled/Custom mode state machine.

The orchestrator is the only writer of ModeState and of the managed event
name. Transitions run the external enter/exit scripts; while in Custom
mode two timers run: the still-watching re-confirmation and the player
title poll. Both are cancelled on every path out of Custom mode.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Hashable, Optional, Sequence

from config import (
    CUSTOM_MODE_LABEL,
    CUSTOM_TITLE_PREFIX,
    DEFAULT_EVENT_NAME,
    ENTER_CUSTOM_SCRIPT_PATH,
    EXIT_CUSTOM_SCRIPT_PATH,
    FILE_PLAY_VOTE_SECONDS,
    MODE_VOTE_SECONDS,
    PLAY_FILE_SCRIPT_PATH,
    SCRIPT_ERROR_MARKER,
    SKIP_SCRIPT_PATH,
    SKIP_VOTE_DECREMENT_SECONDS,
    SKIP_VOTE_FLOOR_SECONDS,
    SKIP_VOTE_SECONDS,
    STILL_WATCHING_INTERVAL_SECONDS,
    STILL_WATCHING_RESPONSE_SECONDS,
    TITLE_POLL_INTERVAL_SECONDS,
)
from errors import ScriptError, ScriptExecutionError, VoteInProgressError, error_manager
from events import ManagedEvent
from executors import ScriptExecutor
from models import Mode, ModeState, ScriptResult, TransitionResult, VoteKind, VoteOutcome
from player import MediaPlayerTitleQuery
from utils import clean_player_title, format_duration, maybe_await
from voting import TickCallback, VoteManager, VoteSession, skip_vote_bypassed

logger = logging.getLogger(__name__)

Notifier = Callable[[str], Awaitable[Any]]


@dataclass
class OrchestratorSettings:
    enter_custom_script: str = ENTER_CUSTOM_SCRIPT_PATH
    exit_custom_script: str = EXIT_CUSTOM_SCRIPT_PATH
    skip_script: str = SKIP_SCRIPT_PATH
    play_file_script: str = PLAY_FILE_SCRIPT_PATH
    mode_vote_seconds: float = MODE_VOTE_SECONDS
    skip_vote_seconds: float = SKIP_VOTE_SECONDS
    skip_vote_decrement: float = SKIP_VOTE_DECREMENT_SECONDS
    skip_vote_floor: float = SKIP_VOTE_FLOOR_SECONDS
    file_play_vote_seconds: float = FILE_PLAY_VOTE_SECONDS
    still_watching_interval: float = STILL_WATCHING_INTERVAL_SECONDS
    still_watching_response: float = STILL_WATCHING_RESPONSE_SECONDS
    title_poll_interval: float = TITLE_POLL_INTERVAL_SECONDS
    custom_label: str = CUSTOM_MODE_LABEL
    custom_title_prefix: str = CUSTOM_TITLE_PREFIX
    default_event_name: str = DEFAULT_EVENT_NAME
    script_error_marker: str = SCRIPT_ERROR_MARKER


class ModeOrchestrator:
    """Drives Scheduled <-> Custom transitions, skips and file plays."""

    def __init__(
        self,
        state: ModeState,
        votes: VoteManager,
        scripts: ScriptExecutor,
        event: ManagedEvent,
        settings: Optional[OrchestratorSettings] = None,
        title_query: Optional[MediaPlayerTitleQuery] = None,
        current_show: Optional[Callable[[], Optional[str]]] = None,
        notify: Optional[Notifier] = None,
    ):
        self.state = state
        self.votes = votes
        self.scripts = scripts
        self.event = event
        self.settings = settings or OrchestratorSettings()
        self.title_query = title_query
        self.current_show = current_show or (lambda: None)
        self.notify = notify

        self._active_vote: Optional[VoteSession] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._watch_response: Optional[asyncio.Future] = None
        self._name_lock = asyncio.Lock()

    @property
    def mode(self) -> Mode:
        return self.state.mode

    @property
    def active_vote(self) -> Optional[VoteSession]:
        return self._active_vote

    @property
    def awaiting_still_watching(self) -> bool:
        return self._watch_response is not None and not self._watch_response.done()

    # ------------------------------------------------------------------
    # Event naming

    def scheduled_event_name(self) -> str:
        return self.current_show() or self.settings.default_event_name

    def initial_event_name(self) -> str:
        if self.mode is Mode.CUSTOM:
            return self.settings.custom_label
        return self.scheduled_event_name()

    async def refresh_event_name(self) -> bool:
        """Recompute the event name from the current mode and apply it."""
        if self.mode is Mode.CUSTOM:
            await self.poll_title_once()
            return True
        return await self._apply_name(self.scheduled_event_name(), Mode.SCHEDULED)

    async def apply_scheduled_name(self, name: str) -> bool:
        """Rename the event for a schedule entry; ignored outside Scheduled mode."""
        return await self._apply_name(name, Mode.SCHEDULED)

    async def _apply_name(self, name: str, expected: Mode) -> bool:
        # Serialized; the mode is re-read under the lock.
        async with self._name_lock:
            if self.mode is not expected:
                logger.info("Skipping event rename to %r: mode is %s", name, self.mode.value)
                return False
            return await self.event.set_name(name)

    async def poll_title_once(self) -> str:
        """Read the player title and mirror it into the event name."""
        title = None
        if self.title_query is not None:
            try:
                title = clean_player_title(await self.title_query.current_title())
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Player title query failed", exc_info=True)
        name = f"{self.settings.custom_title_prefix}{title}" if title else self.settings.custom_label
        if name != self.event.name:
            await self._apply_name(name, Mode.CUSTOM)
        return name

    # ------------------------------------------------------------------
    # Votes

    def _busy_result(self) -> TransitionResult:
        return TransitionResult(False, self.mode, "Another vote is already running. Wait for it to finish.")

    async def _run_vote(
        self,
        kind: VoteKind,
        duration: float,
        context: Hashable,
        on_tick: Optional[TickCallback],
    ) -> VoteOutcome:
        session = self.votes.start_vote(kind, duration, context=context, on_tick=on_tick)
        self._active_vote = session
        try:
            return await session.wait()
        finally:
            if self._active_vote is session:
                self._active_vote = None

    def cast_ballot(self, voter_id: Hashable, choice, context: Hashable = None) -> bool:
        """
        Forward a ballot to the running orchestrator vote. A ballot carrying a
        context only counts toward a vote opened in that same context.
        """
        session = self._active_vote
        if session is None:
            return False
        if context is not None and session.context != context:
            return False
        return self.votes.cast_ballot(session, voter_id, choice)

    @staticmethod
    def _vote_failed(outcome: VoteOutcome, mode: Mode) -> TransitionResult:
        return TransitionResult(
            False,
            mode,
            f"Vote failed ({outcome.yes_count} yes / {outcome.no_count} no).",
            outcome=outcome,
        )

    async def request_mode_vote(
        self,
        context: Hashable = None,
        on_tick: Optional[TickCallback] = None,
    ) -> TransitionResult:
        """Vote to flip the mode; a passed vote runs the transition."""
        if self._active_vote is not None:
            return self._busy_result()

        origin = self.mode
        kind = VoteKind.MODE_TO_CUSTOM if origin is Mode.SCHEDULED else VoteKind.MODE_TO_SCHEDULED
        try:
            outcome = await self._run_vote(kind, self.settings.mode_vote_seconds, context, on_tick)
        except VoteInProgressError:
            return self._busy_result()

        if not outcome.passed:
            return self._vote_failed(outcome, self.mode)
        if self.mode is not origin:
            return TransitionResult(False, self.mode, f"Mode already changed to {self.mode.value}.", outcome=outcome)

        if kind is VoteKind.MODE_TO_CUSTOM:
            result = await self._enter_custom()
        else:
            result = await self._exit_custom(reason="vote")
        return replace(result, outcome=outcome)

    def skip_vote_duration(self) -> float:
        settings = self.settings
        reduced = settings.skip_vote_seconds - self.state.skip_streak * settings.skip_vote_decrement
        return max(settings.skip_vote_floor, reduced)

    async def request_skip(
        self,
        context: Hashable = None,
        participants: Optional[int] = None,
        on_tick: Optional[TickCallback] = None,
    ) -> TransitionResult:
        """Skip the current item in Custom mode, by vote or bypass."""
        if self.mode is not Mode.CUSTOM:
            return TransitionResult(False, self.mode, "Skipping is only available in Custom mode.")
        if self._active_vote is not None:
            return self._busy_result()

        if participants is not None and skip_vote_bypassed(participants):
            logger.info("Skip vote bypassed (%s participants)", participants)
            outcome = VoteOutcome(passed=True, yes_count=0, no_count=0, reason="bypass")
        else:
            try:
                outcome = await self._run_vote(VoteKind.SKIP_ITEM, self.skip_vote_duration(), context, on_tick)
            except VoteInProgressError:
                return self._busy_result()

        if not outcome.passed:
            self.state.skip_streak = 0
            return self._vote_failed(outcome, self.mode)
        if self.mode is not Mode.CUSTOM:
            return TransitionResult(False, self.mode, "Custom mode ended before the skip could run.", outcome=outcome)

        try:
            await self._run_script(self.settings.skip_script, name="skip script")
        except ScriptError as error:
            self.state.skip_streak = 0
            return TransitionResult(
                False, self.mode, error_manager.script_failure_message(error, "skip"), outcome=outcome
            )

        self.state.skip_streak += 1
        self._restart_title_poll()
        return TransitionResult(True, self.mode, "Skipped.", outcome=outcome)

    async def request_file_play(
        self,
        path: str,
        context: Hashable = None,
        on_tick: Optional[TickCallback] = None,
    ) -> TransitionResult:
        """Vote to play a local file in Custom mode."""
        if self.mode is not Mode.CUSTOM:
            return TransitionResult(False, self.mode, "Playing files is only available in Custom mode.")
        if not path or not os.path.isfile(path):
            return TransitionResult(False, self.mode, "That file no longer exists.")
        if self._active_vote is not None:
            return self._busy_result()

        try:
            outcome = await self._run_vote(
                VoteKind.CONFIRM_FILE_PLAY, self.settings.file_play_vote_seconds, context, on_tick
            )
        except VoteInProgressError:
            return self._busy_result()

        if not outcome.passed:
            return self._vote_failed(outcome, self.mode)
        if self.mode is not Mode.CUSTOM:
            return TransitionResult(False, self.mode, "Custom mode ended before the file could play.", outcome=outcome)

        try:
            await self._run_script(self.settings.play_file_script, [path], name="play file script")
        except ScriptError as error:
            return TransitionResult(
                False, self.mode, error_manager.script_failure_message(error, "play the file"), outcome=outcome
            )

        self._restart_title_poll()
        return TransitionResult(True, self.mode, f"Now playing `{os.path.basename(path)}`.", outcome=outcome)

    # ------------------------------------------------------------------
    # Transitions

    async def force_mode(self, target: Optional[Mode] = None) -> TransitionResult:
        """
        Admin override. The mode changes even when the script fails; the
        failure is reported as a warning.
        """
        target = target or (Mode.CUSTOM if self.mode is Mode.SCHEDULED else Mode.SCHEDULED)
        if target is self.mode:
            return TransitionResult(True, self.mode, f"Already in {self.mode.value} mode.")
        if self._active_vote is not None:
            await self.votes.end_vote(self._active_vote, reason="superseded", passed=False)

        if target is Mode.CUSTOM:
            return await self._enter_custom(forced=True)
        return await self._exit_custom(forced=True, reason="forced")

    async def _enter_custom(self, forced: bool = False) -> TransitionResult:
        warning = None
        try:
            await self._run_script(self.settings.enter_custom_script, name="enter custom script")
        except ScriptError as error:
            if not forced:
                logger.error("Enter-custom script failed; staying in %s mode: %s", self.mode.value, error)
                return TransitionResult(
                    False, self.mode, error_manager.script_failure_message(error, "switch to Custom mode")
                )
            logger.warning("Enter-custom script failed during forced switch: %s", error)
            warning = error_manager.script_failure_message(error, "run the Custom mode script")

        self.state.mode = Mode.CUSTOM
        self.state.skip_streak = 0
        logger.info("Mode changed to CUSTOM (forced=%s)", forced)
        await self._apply_name(self.settings.custom_label, Mode.CUSTOM)
        self._start_custom_timers()
        return TransitionResult(True, self.mode, "Switched to Custom mode.", warning=warning)

    async def _exit_custom(self, forced: bool = False, reason: str = "vote") -> TransitionResult:
        warning = None
        try:
            await self._run_script(self.settings.exit_custom_script, name="exit custom script")
        except ScriptError as error:
            if not forced:
                logger.error("Exit-custom script failed (%s); staying in Custom mode: %s", reason, error)
                return TransitionResult(
                    False, self.mode, error_manager.script_failure_message(error, "return to the schedule")
                )
            logger.warning("Exit-custom script failed during forced switch: %s", error)
            warning = error_manager.script_failure_message(error, "run the schedule script")

        self.state.mode = Mode.SCHEDULED
        self.state.skip_streak = 0
        self._cancel_custom_timers()
        logger.info("Mode changed to SCHEDULED (reason=%s)", reason)
        await self._apply_name(self.scheduled_event_name(), Mode.SCHEDULED)
        return TransitionResult(True, self.mode, "Back to the scheduled programming.", warning=warning)

    async def _run_script(self, path: str, args: Sequence[str] = (), name: str = "script") -> ScriptResult:
        result = await self.scripts.run(path, args, name=name)
        marker = self.settings.script_error_marker
        if marker and any(line.strip().startswith(marker) for line in result.stderr.splitlines()):
            raise ScriptExecutionError(
                f"{name} reported an error",
                script_path=path,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    # ------------------------------------------------------------------
    # Custom mode timers

    def _start_custom_timers(self) -> None:
        self._cancel_custom_timers()
        self._watch_task = asyncio.create_task(self._still_watching_loop())
        self._poll_task = asyncio.create_task(self._title_poll_loop())

    def _restart_title_poll(self) -> None:
        if self.mode is not Mode.CUSTOM:
            return
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = asyncio.create_task(self._title_poll_loop())

    def _cancel_custom_timers(self) -> None:
        current = asyncio.current_task()
        for task in (self._watch_task, self._poll_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._watch_task = None
        self._poll_task = None
        if self._watch_response is not None and not self._watch_response.done():
            self._watch_response.cancel()
        self._watch_response = None

    def respond_still_watching(self, watching: bool) -> bool:
        """Answer the pending still-watching prompt. False if none is pending."""
        future = self._watch_response
        if future is None or future.done():
            return False
        future.set_result(watching)
        return True

    async def _still_watching_loop(self) -> None:
        settings = self.settings
        while self.mode is Mode.CUSTOM:
            await asyncio.sleep(settings.still_watching_interval)
            if self.mode is not Mode.CUSTOM:
                return

            future = asyncio.get_running_loop().create_future()
            self._watch_response = future
            await self._notify(
                "👀 Is anyone still watching? Reply `!watching` to keep Custom mode "
                f"or `!notwatching` to go back to the schedule ({format_duration(settings.still_watching_response)} to answer)."
            )
            try:
                watching = await asyncio.wait_for(future, timeout=settings.still_watching_response)
                reason = "not watching"
            except asyncio.TimeoutError:
                watching = False
                reason = "still-watching timeout"
            finally:
                if self._watch_response is future:
                    self._watch_response = None

            if watching:
                logger.info("Still-watching confirmed; Custom mode continues")
                await self._notify("👍 Custom mode continues.")
                continue

            logger.info("Leaving Custom mode: %s", reason)
            result = await self._exit_custom(reason=reason)
            message = result.message if result.ok else f"{result.message} Custom mode stays on."
            await self._notify(message)
            if result.ok:
                return

    async def _title_poll_loop(self) -> None:
        while self.mode is Mode.CUSTOM:
            try:
                await self.poll_title_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Title poll failed")
            await asyncio.sleep(self.settings.title_poll_interval)

    async def _notify(self, message: str) -> None:
        if self.notify is None:
            return
        try:
            await maybe_await(self.notify(message))
        except Exception:
            logger.warning("Could not deliver orchestrator notice", exc_info=True)

    async def shutdown(self) -> None:
        """Stop timers and resolve any open vote."""
        self._cancel_custom_timers()
        await self.votes.cancel_all()
