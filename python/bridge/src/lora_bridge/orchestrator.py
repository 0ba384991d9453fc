"""Action orchestrator: runs decisions against one or more terminals.

A multi-step decision is first classified into execution groups. Prompts
to different terminals that follow each other form one parallel group: all
of them are typed before any is awaited, then each terminal is awaited on
its own. Everything else runs strictly in order.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from .config import BridgeConfig
from .decisions import (
    ActionSequenceDecision,
    ActionStep,
    AppControlStep,
    BackgroundTaskDecision,
    ControlDecision,
    ControlStep,
    ConversationalDecision,
    Decision,
    IgnoreDecision,
    PromptDecision,
    PromptStep,
    ScreenshotStep,
    SpeakStep,
    SwitchTerminalStep,
    WorkingDecision,
)
from .decision_model import Narrator
from .errors import ConfigurationError, TransientIOError, UserFacingFailure
from .events import EventSink
from .memory import ConversationMemoryStore
from .models import BackgroundTask, ConversationTurn, TerminalSession
from .pipeline import VoiceContext, VoicePipeline
from .readiness import ReadinessResult, ReadinessWatcher
from .speech import OpenAISpeechClient
from .terminal_text import extract_agent_response
from .terminals import TerminalSessionManager

logger = logging.getLogger(__name__)

WORKING_FALLBACK = "Sorry, I'm having trouble working that out. Could you say it another way?"


@dataclass
class ScreenshotResult:
    """What the client sent back for a screenshot request."""

    image: bytes | None = None
    description: str | None = None


ScreenshotRequester = Callable[[], Awaitable[ScreenshotResult | None]]


@dataclass
class VoiceTurn:
    """State for one utterance being acted on."""

    terminal: TerminalSession
    utterance: str
    terminals: list[TerminalSession]
    active_index: int = 0
    request_screenshot: ScreenshotRequester | None = None
    screenshot: ScreenshotResult | None = None
    # Ids of terminals this turn has typed a prompt into
    dispatched: set[str] = field(default_factory=set)
    # Memory record of this utterance, once the decision is stored
    record: ConversationTurn | None = None

    @property
    def project_id(self) -> str:
        return self.terminal.project_id

    def terminal_at(self, index: int | None) -> TerminalSession | None:
        if index is None:
            index = self.active_index
        if 0 <= index < len(self.terminals):
            return self.terminals[index]
        return None


@dataclass
class PlannedStep:
    """An action step with its target terminal resolved."""

    step: ActionStep
    terminal: int | None = None


@dataclass
class ExecutionGroup:
    """Steps that run together. Only prompts run concurrently in a parallel group."""

    parallel: bool = False
    steps: list[PlannedStep] = field(default_factory=list)

    def prompt_targets(self) -> set[int]:
        return {p.terminal for p in self.steps if isinstance(p.step, PromptStep)}


@dataclass
class StepOutcome:
    """Result of one executed step."""

    step: ActionStep
    terminal: int | None
    ok: bool
    uncertain: bool = False
    response: str = ""
    error: str | None = None


@dataclass
class SequenceReport:
    """Ordered outcomes of an action sequence."""

    outcomes: list[StepOutcome] = field(default_factory=list)
    halted: bool = False
    last_response: str = ""


def classify_steps(steps: list[ActionStep], active_terminal: int = 0) -> list[ExecutionGroup]:
    """Split steps into ordered execution groups in a single pass.

    Args:
        steps: Steps in the order the model gave them
        active_terminal: Target for steps that do not name a terminal

    Returns:
        Groups in execution order
    """
    groups: list[ExecutionGroup] = []
    current: ExecutionGroup | None = None
    target = active_terminal

    def flush() -> None:
        nonlocal current
        if current is not None and current.steps:
            groups.append(current)
        current = None

    for step in steps:
        if isinstance(step, SwitchTerminalStep):
            flush()
            groups.append(ExecutionGroup(steps=[PlannedStep(step, step.terminal)]))
            target = step.terminal
        elif isinstance(step, ScreenshotStep):
            flush()
            groups.append(ExecutionGroup(steps=[PlannedStep(step)]))
        elif isinstance(step, PromptStep):
            planned = PlannedStep(step, target if step.terminal is None else step.terminal)
            if current is None:
                current = ExecutionGroup(steps=[planned])
            elif planned.terminal in current.prompt_targets():
                flush()
                current = ExecutionGroup(steps=[planned])
            else:
                if current.prompt_targets():
                    current.parallel = True
                current.steps.append(planned)
        else:
            terminal = None
            if isinstance(step, ControlStep):
                terminal = target if step.terminal is None else step.terminal
            if current is None:
                current = ExecutionGroup()
            current.steps.append(PlannedStep(step, terminal))

    flush()
    return groups


def _terminal_label(index: int | None) -> str:
    return "the screenshot" if index is None else f"terminal {index + 1}"


def _join(labels: list[str]) -> str:
    if len(labels) <= 1:
        return "".join(labels)
    return ", ".join(labels[:-1]) + " and " + labels[-1]


class ActionOrchestrator:
    """Executes decisions and narrates the outcome."""

    def __init__(
        self,
        manager: TerminalSessionManager,
        watcher: ReadinessWatcher,
        pipeline: VoicePipeline,
        memory: ConversationMemoryStore,
        narrator: Narrator,
        speech: OpenAISpeechClient | None,
        sink: EventSink,
        config: BridgeConfig,
    ):
        self.manager = manager
        self.watcher = watcher
        self.pipeline = pipeline
        self.memory = memory
        self.narrator = narrator
        self.speech = speech
        self.sink = sink
        self.config = config
        self.response_timeout = config.readiness.response_timeout
        self.background_timeout = config.readiness.background_timeout

    # -- speaking ---------------------------------------------------------------

    async def speak(self, terminal: TerminalSession, text: str, is_final: bool = True) -> None:
        """Send a spoken response, with audio when synthesis is available."""
        audio = None
        if self.speech is not None and self.speech.available and text:
            try:
                audio = base64.b64encode(await self.speech.synthesize(text)).decode()
            except ConfigurationError:
                audio = None
            except Exception as e:
                logger.warning(f"Speech synthesis failed, sending text only: {e}")
        await self.sink.send("voice_terminal_speaking", {
            "terminalId": terminal.id,
            "responseText": text,
            "audioData": audio,
            "audioMimeType": "audio/mp3" if audio else None,
            "isFinal": is_final,
        })
        if is_final:
            terminal.mark_spoken()
        elif audio:
            # Interim speech still starts the self-capture cooldown
            terminal.last_tts_at = time.monotonic()

    # -- single prompts ---------------------------------------------------------

    async def _dispatch(self, turn: VoiceTurn, index: int | None, text: str):
        """Type a prompt into a terminal without waiting for the answer.

        Returns:
            (terminal, snapshot) on success, (None, reason) otherwise
        """
        terminal = turn.terminal_at(index)
        if terminal is None:
            return None, f"{_terminal_label(index)} is not open"
        if terminal.response_lock.locked():
            return None, f"{_terminal_label(index)} is still busy with an earlier request"
        await terminal.response_lock.acquire()
        turn.dispatched.add(terminal.id)
        terminal.awaiting_response = True
        terminal.output_buffer = ""
        try:
            snapshot = await self.manager.submit_prompt(terminal, text)
        except (UserFacingFailure, TransientIOError) as e:
            terminal.awaiting_response = False
            terminal.response_lock.release()
            return None, str(e)
        except BaseException:
            terminal.awaiting_response = False
            terminal.response_lock.release()
            raise
        return terminal, snapshot

    async def _await_response(
        self, terminal: TerminalSession, snapshot: str, timeout: float | None = None
    ) -> ReadinessResult:
        """Wait for a dispatched prompt and release the terminal."""
        try:
            result = await self.watcher.await_ready(
                terminal.agent_session_name,
                timeout=self.response_timeout if timeout is None else timeout,
                previous_output=snapshot,
            )
            terminal.stall_count = terminal.stall_count + 1 if result.timed_out else 0
            return result
        finally:
            terminal.awaiting_response = False
            terminal.response_lock.release()

    @staticmethod
    def _outcome_from_result(step: ActionStep, index: int | None, result: ReadinessResult) -> StepOutcome:
        response = extract_agent_response(result.output)
        if result.state == "terminated":
            return StepOutcome(step, index, ok=False, response=response, error="the agent exited")
        return StepOutcome(step, index, ok=True, uncertain=result.timed_out, response=response)

    async def run_prompt(self, turn: VoiceTurn, index: int | None, text: str, step: ActionStep | None = None) -> StepOutcome:
        """Submit one prompt and wait for the agent to settle."""
        step = step or PromptStep(text=text, terminal=index)
        resolved = turn.active_index if index is None else index
        terminal, snapshot_or_error = await self._dispatch(turn, resolved, text)
        if terminal is None:
            return StepOutcome(step, resolved, ok=False, error=snapshot_or_error)
        result = await self._await_response(terminal, snapshot_or_error)
        return self._outcome_from_result(step, resolved, result)

    # -- sequences --------------------------------------------------------------

    async def _run_step(self, planned: PlannedStep, turn: VoiceTurn) -> StepOutcome:
        step = planned.step
        if isinstance(step, PromptStep):
            return await self.run_prompt(turn, planned.terminal, step.text, step)

        if isinstance(step, ControlStep):
            terminal = turn.terminal_at(planned.terminal)
            if terminal is None:
                return StepOutcome(step, planned.terminal, ok=False, error=f"{_terminal_label(planned.terminal)} is not open")
            try:
                reply = await self.manager.run_control(terminal, step.key)
            except TransientIOError as e:
                return StepOutcome(step, planned.terminal, ok=False, error=str(e))
            return StepOutcome(step, planned.terminal, ok=True, response=reply)

        if isinstance(step, SpeakStep):
            await self.speak(turn.terminal, step.text, is_final=False)
            return StepOutcome(step, None, ok=True)

        if isinstance(step, SwitchTerminalStep):
            target = turn.terminal_at(step.terminal)
            if target is None:
                return StepOutcome(step, step.terminal, ok=False, error=f"{_terminal_label(step.terminal)} is not open")
            turn.active_index = step.terminal
            await self.sink.send("app_control", {
                "action": "switch_terminal",
                "target": target.id,
                "params": {"index": step.terminal},
            })
            return StepOutcome(step, step.terminal, ok=True)

        if isinstance(step, ScreenshotStep):
            shot = await self._capture_screenshot(turn)
            if shot is None:
                return StepOutcome(step, None, ok=False, error="no screenshot arrived")
            return StepOutcome(step, None, ok=True, response=shot.description or "")

        if isinstance(step, AppControlStep):
            await self.sink.send("app_control", {
                "action": step.command,
                "target": step.target,
                "params": step.params,
            })
            return StepOutcome(step, None, ok=True)

        return StepOutcome(step, None, ok=False, error=f"unsupported step {step.action}")

    async def _capture_screenshot(self, turn: VoiceTurn) -> ScreenshotResult | None:
        if turn.request_screenshot is None:
            return None
        try:
            shot = await asyncio.wait_for(
                turn.request_screenshot(), timeout=self.config.voice.screenshot_timeout
            )
        except asyncio.TimeoutError:
            logger.info("Screenshot request timed out")
            return None
        if shot is not None:
            turn.screenshot = shot
        return shot

    async def _run_parallel(
        self, group: ExecutionGroup, turn: VoiceTurn, skip: set[int]
    ) -> list[StepOutcome]:
        """Dispatch every prompt in the group, then await them concurrently."""
        outcomes: list[StepOutcome] = []
        dispatched: list[tuple[PlannedStep, TerminalSession, str]] = []
        waits: list[asyncio.Task] = []
        # Terminals whose lock this group still owns, by id
        held: dict[str, TerminalSession] = {}

        async def wait_for(planned: PlannedStep, terminal: TerminalSession, snapshot: str):
            # _await_response releases the lock from here on
            held.pop(terminal.id, None)
            return planned, await self._await_response(terminal, snapshot)

        try:
            for planned in group.steps:
                if not isinstance(planned.step, PromptStep):
                    if planned.terminal is not None and planned.terminal in skip:
                        continue
                    outcomes.append(await self._run_step(planned, turn))
                    continue
                if planned.terminal in skip:
                    continue
                terminal, snapshot_or_error = await self._dispatch(turn, planned.terminal, planned.step.text)
                if terminal is None:
                    outcomes.append(StepOutcome(planned.step, planned.terminal, ok=False, error=snapshot_or_error))
                    continue
                held[terminal.id] = terminal
                dispatched.append((planned, terminal, snapshot_or_error))

            waits = [asyncio.create_task(wait_for(*entry)) for entry in dispatched]
            pending = len(waits)
            for finished in asyncio.as_completed(waits):
                planned, result = await finished
                outcome = self._outcome_from_result(planned.step, planned.terminal, result)
                outcomes.append(outcome)
                pending -= 1
                if pending:
                    label = _terminal_label(planned.terminal).capitalize()
                    note = "finished" if outcome.ok else "ran into a problem"
                    await self.speak(turn.terminal, f"{label} {note}. Still waiting on {pending} more.", is_final=False)
        finally:
            for task in waits:
                if not task.done():
                    task.cancel()
            if waits:
                await asyncio.gather(*waits, return_exceptions=True)
            # Dispatched but never awaited
            for terminal in held.values():
                terminal.awaiting_response = False
                terminal.response_lock.release()
        return outcomes

    async def execute(self, steps: list[ActionStep], turn: VoiceTurn) -> SequenceReport:
        """Run an action sequence group by group.

        A failed step in a sequential group halts everything after it. In a
        parallel group only the failed terminals are skipped later on,
        unless every prompt in the group failed.
        """
        report = SequenceReport()
        failed_terminals: set[int] = set()
        busy_terminals: set[int] = set()

        for group in classify_steps(steps, turn.active_index):
            skip = failed_terminals | busy_terminals
            if group.parallel:
                outcomes = await self._run_parallel(group, turn, skip)
                report.outcomes += outcomes
                prompt_outcomes = [o for o in outcomes if isinstance(o.step, PromptStep)]
                for o in prompt_outcomes:
                    if not o.ok and o.terminal is not None:
                        failed_terminals.add(o.terminal)
                    elif o.uncertain and o.terminal is not None:
                        busy_terminals.add(o.terminal)
                    if o.ok and o.response:
                        report.last_response = o.response
                if prompt_outcomes and not any(o.ok for o in prompt_outcomes):
                    report.halted = True
                    break
                continue

            for planned in group.steps:
                skip = failed_terminals | busy_terminals
                if isinstance(planned.step, (PromptStep, ControlStep)) and planned.terminal in skip:
                    logger.info(f"Skipping {planned.step.action} for {_terminal_label(planned.terminal)}")
                    continue
                outcome = await self._run_step(planned, turn)
                report.outcomes.append(outcome)
                if outcome.ok and outcome.uncertain and outcome.terminal is not None:
                    busy_terminals.add(outcome.terminal)
                if outcome.ok and isinstance(planned.step, PromptStep) and outcome.response:
                    report.last_response = outcome.response
                if not outcome.ok and not isinstance(planned.step, ScreenshotStep):
                    report.halted = True
                    break
            if report.halted:
                break

        return report

    async def summarize(self, report: SequenceReport, utterance: str) -> str:
        """Spoken summary of an executed sequence."""
        failed = [o for o in report.outcomes if not o.ok and not isinstance(o.step, (SpeakStep, AppControlStep))]
        # Only work the agent or client produced counts as finished
        succeeded = [o for o in report.outcomes if o.ok and isinstance(o.step, (PromptStep, ScreenshotStep))]

        if failed and succeeded:
            ok_labels = _join(sorted({_terminal_label(o.terminal) for o in succeeded if o.terminal is not None}))
            bad = _join(sorted({_terminal_label(o.terminal) for o in failed}))
            reason = failed[0].error or "an error"
            if ok_labels:
                return f"{ok_labels.capitalize()} finished, but {bad} failed: {reason}."
            return f"Part of that worked, but {bad} failed: {reason}."
        if failed:
            reason = failed[0].error or "an error"
            return f"Sorry, that didn't work: {reason}."
        if any(o.uncertain for o in succeeded):
            spoken = await self.narrator.present(report.last_response, utterance) if report.last_response else ""
            return f"I couldn't confirm that finished. Here's what I have so far. {spoken}".strip()
        if len(report.last_response) > self.config.voice.min_narration_chars:
            return await self.narrator.present(report.last_response, utterance)
        return "Done."

    # -- background tasks -------------------------------------------------------

    async def start_background(self, turn: VoiceTurn, decision: BackgroundTaskDecision) -> BackgroundTask | None:
        """Submit a prompt and report back when it finishes, without blocking the turn."""
        index = turn.active_index if decision.terminal is None else decision.terminal
        terminal, snapshot_or_error = await self._dispatch(turn, index, decision.content)
        if terminal is None:
            await self.speak(turn.terminal, f"I couldn't start that: {snapshot_or_error}.")
            return None

        task = BackgroundTask(
            description=decision.description,
            prompt_text=decision.content,
            terminal_id=terminal.id,
        )
        terminal.background_tasks[task.id] = task
        # The runner owns the terminal lock from here
        runner = asyncio.create_task(self._run_background(terminal, task, snapshot_or_error))
        self.manager.track_task(runner)
        turn.dispatched.discard(terminal.id)
        await self.sink.send("background_task_started", task.to_dict())
        logger.info(f"Background task {task.id} started on {terminal.id}: {task.description}")
        return task

    async def _run_background(self, terminal: TerminalSession, task: BackgroundTask, snapshot: str) -> None:
        try:
            result = await self._await_response(terminal, snapshot, timeout=self.background_timeout)
            if result.timed_out or result.state == "terminated":
                task.status = "failed"
                task.result = "timed out" if result.timed_out else "the agent exited"
            else:
                task.status = "completed"
                task.result = await self.narrator.present(
                    extract_agent_response(result.output), task.description
                )
        except asyncio.CancelledError:
            task.status = "failed"
            task.result = "cancelled"
            raise
        except Exception as e:
            logger.error(f"Background task {task.id} failed: {e}")
            task.status = "failed"
            task.result = str(e)
        finally:
            terminal.background_tasks.pop(task.id, None)
            if self.sink.connected and task.result != "cancelled":
                await self.sink.send("background_task_completed", task.to_dict())
        logger.info(f"Background task {task.id} {task.status}")

    # -- whole turns ------------------------------------------------------------

    async def build_context(self, turn: VoiceTurn) -> VoiceContext:
        terminal = turn.terminal_at(None) or turn.terminal
        readiness = await self.watcher.get_state(terminal.agent_session_name)
        recent = terminal.output_buffer
        if not recent.strip():
            screen = await self.manager.multiplexer.capture_output(terminal.agent_session_name, 40)
            recent = extract_agent_response(screen)
        shot = turn.screenshot
        return VoiceContext(
            readiness=readiness,
            recent_output=recent[-self.config.voice.recent_output_chars:],
            project_name=turn.project_id,
            terminal_count=len(turn.terminals),
            active_terminal=turn.active_index,
            visual_description=shot.description if shot else None,
            image=shot.image if shot else None,
        )

    async def decide_with_guard(self, turn: VoiceTurn) -> Decision:
        """Decide, letting the model gather context a bounded number of times."""
        iterations = 0
        while True:
            context = await self.build_context(turn)
            decision = await self.pipeline.decide(turn.utterance, turn.project_id, context, remember=False)
            if not isinstance(decision, WorkingDecision):
                turn.record = await self.pipeline.record(turn.utterance, turn.project_id, decision)
                return decision

            iterations += 1
            if iterations > self.config.voice.max_working_iterations:
                logger.warning(f"Working loop cap reached for {turn.utterance!r}")
                fallback = ConversationalDecision(content=WORKING_FALLBACK)
                turn.record = await self.pipeline.record(turn.utterance, turn.project_id, fallback)
                return fallback

            await self.sink.send("voice_working", {"terminalId": turn.terminal.id, "reason": decision.reason})
            if decision.gather == "screenshot":
                await self._capture_screenshot(turn)
            else:
                terminal = turn.terminal_at(None) or turn.terminal
                screen = await self.manager.multiplexer.capture_output(
                    terminal.agent_session_name, self.config.multiplexer.capture_lines
                )
                terminal.output_buffer = extract_agent_response(screen)

    async def run_turn(self, turn: VoiceTurn) -> Decision:
        """Decide on an utterance and carry it out, ending with a final spoken response."""
        decision = await self.decide_with_guard(turn)
        terminal = turn.terminal
        project_id = turn.project_id

        if isinstance(decision, IgnoreDecision):
            logger.info(f"Ignoring {turn.utterance!r}")
            return decision

        if isinstance(decision, ConversationalDecision):
            await self.speak(terminal, decision.content)
            self.memory.update_turn(project_id, turn.record, spoken_summary=decision.content)
            return decision

        if isinstance(decision, ControlDecision):
            target = turn.terminal_at(None) or terminal
            reply = await self.manager.run_control(target, decision.content)
            if decision.content == "CTRL_C":
                target.reset_voice_turn()
            await self.speak(terminal, reply)
            return decision

        if isinstance(decision, PromptDecision):
            terminal.idle_waiting = False
            await self.sink.send("voice_working", {
                "terminalId": terminal.id,
                "reason": f"Sending to the agent: {decision.content[:50]}",
            })
            outcome = await self.run_prompt(turn, None, decision.content)
            report = SequenceReport(outcomes=[outcome], last_response=outcome.response if outcome.ok else "")
            spoken = await self.summarize(report, turn.utterance)
            self.memory.update_turn(project_id, turn.record, agent_output=outcome.response, spoken_summary=spoken)
            await self.speak(terminal, spoken)
            return decision

        if isinstance(decision, ActionSequenceDecision):
            terminal.idle_waiting = False
            if decision.content:
                await self.speak(terminal, decision.content, is_final=False)
            report = await self.execute(decision.steps, turn)
            spoken = await self.summarize(report, turn.utterance)
            self.memory.update_turn(project_id, turn.record, agent_output=report.last_response, spoken_summary=spoken)
            await self.speak(terminal, spoken)
            return decision

        if isinstance(decision, BackgroundTaskDecision):
            ack = f"On it. I'll let you know when {decision.description} is done."
            await self.speak(terminal, ack, is_final=False)
            await self.start_background(turn, decision)
            self.memory.update_turn(project_id, turn.record, spoken_summary=ack)
            return decision

        return decision
