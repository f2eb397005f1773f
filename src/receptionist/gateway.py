"""
Call session gateway.

One `CallGateway` per Twilio media stream. It owns the call's session and
wires the pieces together:

inbound mu-law frames -> batch (5 x 20ms) -> linear16 -> Deepgram
  -> (final + speech_final transcript) -> classify -> dialogue engine
  -> ElevenLabs mu-law chunks -> Twilio media messages + `eos` mark

The WebSocket receive loop only parses and forwards audio. Dialogue work runs
in a single turn worker that processes queued jobs (greeting, transcripts)
one at a time, so audio keeps flowing while a turn is classified and spoken.
The silence supervisor is disarmed the moment a transcript arrives, before
the job is even queued.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

import structlog
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient

from src.receptionist.audio import FrameBatcher, get_audio_duration_ms, ulaw_to_linear16
from src.receptionist.config import get_config
from src.receptionist.dialogue import RETRY_PREFIX, TRANSFER_LINE, ActionKind, DialogueEngine, TurnPlan
from src.receptionist.extract import IntentClassifier, mask_phone, redact_phone_numbers, today_in_timezone
from src.receptionist.llm import LLMClient
from src.receptionist.notify import WebhookNotifier
from src.receptionist.session import CallSession
from src.receptionist.stt import DeepgramSTT, TranscriptionResult
from src.receptionist.supervisor import SilenceSupervisor, SupervisorTimings
from src.receptionist.tts import ElevenLabsTTS
from src.receptionist.twilio_protocol import (
    TwilioEventType,
    TwilioMediaEvent,
    TwilioStartEvent,
    create_mark_message,
    create_media_message,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)

TRANSFER_FAILED_LINE = "I couldn't transfer right now. I'll have the owner call you back."
TRANSFER_UNAVAILABLE_LINE = "I'll share your question with the owner to call you back."


@dataclass
class TurnJob:
    """Work item for the turn worker."""
    kind: str  # "greeting" | "transcript"
    text: str = ""
    received_at: float = field(default_factory=time.time)


@dataclass
class GatewayMetrics:
    turns: int = 0
    lines_spoken: int = 0
    audio_bytes_out: int = 0
    audio_ms_out: float = 0.0
    media_frames_in: int = 0
    asks_suppressed: int = 0

    def to_dict(self) -> dict:
        return {
            "turns": self.turns,
            "lines_spoken": self.lines_spoken,
            "audio_bytes_out": self.audio_bytes_out,
            "audio_ms_out": round(self.audio_ms_out, 2),
            "media_frames_in": self.media_frames_in,
            "asks_suppressed": self.asks_suppressed,
        }


class CallGateway:
    """
    Per-call orchestrator.

    Args:
        send_message: coroutine that sends one text frame to Twilio
        close_stream: coroutine that closes the Twilio WebSocket
        config: application config (defaults to `get_config()`)

    The remaining keyword arguments replace the default collaborators and
    exist mainly for tests.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        close_stream: Optional[Callable[[], Awaitable[None]]] = None,
        config: Optional[Any] = None,
        *,
        stt: Optional[Any] = None,
        tts: Optional[Any] = None,
        llm: Optional[Any] = None,
        classifier: Optional[Any] = None,
        notifier: Optional[Any] = None,
        engine: Optional[DialogueEngine] = None,
        twilio_client: Optional[Any] = None,
    ):
        self.config = config or get_config()
        self._send_message = send_message
        self._close_stream = close_stream

        self._llm = llm or LLMClient(self.config)
        self._classifier = classifier or IntentClassifier(self._llm)
        self._stt = stt or DeepgramSTT(config=self.config)
        self._tts = tts or ElevenLabsTTS(self.config)
        self._notifier = notifier or WebhookNotifier(self.config)
        self._engine = engine or DialogueEngine(
            acknowledger=self._llm.smalltalk_reply,
            today=lambda: today_in_timezone(self.config.biz_timezone),
            shop_name=self.config.shop_name,
        )
        self._twilio_client = twilio_client

        self._batcher = FrameBatcher(self.config.audio_batch_frames)
        self._turn_queue: asyncio.Queue[TurnJob] = asyncio.Queue()
        self._turn_worker_task: Optional[asyncio.Task] = None
        self._stt_start_task: Optional[asyncio.Task] = None

        self.session: Optional[CallSession] = None
        self.supervisor: Optional[SilenceSupervisor] = None
        self.metrics = GatewayMetrics()

        self._is_running = False
        self._closed = False

    @property
    def is_active(self) -> bool:
        return not self._closed

    @property
    def call_id(self) -> str:
        return self.session.call_id if self.session else ""

    async def start(self) -> None:
        """Start the turn worker and optional Twilio REST client."""
        if (
            self._twilio_client is None
            and self.config.twilio_account_sid
            and self.config.twilio_auth_token
        ):
            self._twilio_client = TwilioClient(
                self.config.twilio_account_sid,
                self.config.twilio_auth_token,
            )

        self._is_running = True
        if self._turn_worker_task is None or self._turn_worker_task.done():
            self._turn_worker_task = asyncio.create_task(self._turn_worker())

    async def stop(self) -> None:
        """Release everything the call holds. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._is_running = False

        if self.supervisor:
            self.supervisor.disarm()

        current = asyncio.current_task()
        tasks_to_cancel: List[asyncio.Task] = []
        for task in (self._turn_worker_task, self._stt_start_task):
            if task and not task.done() and task is not current:
                task.cancel()
                tasks_to_cancel.append(task)
        if tasks_to_cancel:
            await asyncio.gather(*tasks_to_cancel, return_exceptions=True)

        await self._stt.disconnect()
        await self._notifier.close()
        await self._tts.close()

        logger.info(
            "Call ended",
            call_id=self.call_id,
            phase=self.session.phase.value if self.session else None,
            duration_seconds=round(self.session.duration_seconds, 2) if self.session else 0.0,
            metrics=self.metrics.to_dict(),
        )

    async def hangup(self) -> None:
        """Terminate the call from our side."""
        if self._closed:
            return
        logger.info("Hanging up", call_id=self.call_id)
        await self.stop()
        if self._close_stream:
            try:
                await self._close_stream()
            except Exception as e:
                logger.warning("Error closing media stream", call_id=self.call_id, error=str(e))

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Malformed messages are logged and dropped.
        """
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Twilio connected")

        elif event_type == TwilioEventType.START:
            await self._handle_start(event)

        elif event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)

        elif event_type == TwilioEventType.MARK:
            logger.debug("Twilio mark ack", call_id=self.call_id, mark_name=event.name)

        elif event_type == TwilioEventType.STOP:
            logger.info("Twilio stop received", call_id=self.call_id)
            await self.hangup()

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        if self.session is not None:
            logger.warning("Duplicate start event ignored", call_id=self.call_id)
            return

        self.session = CallSession(
            caller_number=event.caller_number,
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
        )
        self.supervisor = SilenceSupervisor(
            self.session,
            speak=self.speak,
            hangup=self.hangup,
            timings=SupervisorTimings.from_config(self.config),
            closing_line=self._engine.closing_line,
            retry_prefix=RETRY_PREFIX,
        )

        logger.info(
            "Call started",
            call_id=self.session.call_id,
            call_sid=event.call_sid,
            stream_sid=event.stream_sid,
            caller=mask_phone(event.caller_number),
        )

        self._stt.set_final_callback(self._on_final_transcript)
        self._stt_start_task = asyncio.create_task(self._start_stt_background())
        self._turn_queue.put_nowait(TurnJob(kind="greeting"))

    async def _start_stt_background(self) -> None:
        """Connect STT without holding up the greeting."""
        ok = await self._stt.connect()
        if ok:
            logger.info("STT ready", call_id=self.call_id)
        else:
            logger.error("STT unavailable for this call", call_id=self.call_id)

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        if not self._is_running or self.session is None:
            return

        self.metrics.media_frames_in += 1
        batch = self._batcher.add(event.payload)
        if batch:
            await self._stt.send_audio(ulaw_to_linear16(batch))

    async def _on_final_transcript(self, result: TranscriptionResult) -> None:
        """STT callback: silence any pending question, then queue the turn."""
        if not self._is_running or self.supervisor is None:
            return
        self.supervisor.disarm()
        self._turn_queue.put_nowait(TurnJob(kind="transcript", text=result.text))

    async def _turn_worker(self) -> None:
        """Background worker that processes queued jobs sequentially."""
        try:
            while self._is_running:
                job = await self._turn_queue.get()
                try:
                    await self._run_turn(job)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Turn failed", call_id=self.call_id, kind=job.kind, error=str(e))
                finally:
                    self._turn_queue.task_done()
        except asyncio.CancelledError:
            pass

    async def _run_turn(self, job: TurnJob) -> None:
        if self.session is None or self.supervisor is None:
            return

        if job.kind == "greeting":
            await self.speak(self._engine.greeting)
            await self.ask(self._engine.opening_question)
            return

        self.supervisor.disarm()
        self.metrics.turns += 1
        logger.info(
            "Turn started",
            call_id=self.call_id,
            transcript=redact_phone_numbers(job.text),
            queue_ms=round((time.time() - job.received_at) * 1000, 2),
        )

        classification = await self._classifier.classify(job.text)
        plan = await self._engine.respond(self.session, job.text, classification)
        await self.execute(plan)

    async def execute(self, plan: TurnPlan) -> None:
        """Carry out a turn plan: notify, speak in order, then end the call if asked."""
        if self.session is None:
            return

        if plan.faq_topic:
            self._notifier.notify_faq(self.session.call_id, plan.faq_topic, plan.faq_service)
        if plan.booking is not None:
            self._notifier.notify_booking(self.session.call_id, plan.booking)

        for action in plan.actions:
            if self._closed:
                return
            if action.kind == ActionKind.ASK:
                await self.ask(action.text)
            else:
                await self.speak(action.text)

        if plan.transfer:
            await self.transfer()
        elif plan.hangup:
            await asyncio.sleep(self.config.hangup_drain_seconds)
            await self.hangup()

    async def speak(self, text: str) -> None:
        """Stream one line to the caller, ending with an `eos` mark."""
        if self._closed or self.session is None or not text:
            return

        stream_sid = self.session.stream_sid
        logger.info("Bot say", call_id=self.session.call_id, text=text)
        self.metrics.lines_spoken += 1

        async for chunk in self._tts.synthesize_streaming(text):
            if self._closed:
                return
            if chunk.audio_bytes:
                self.metrics.audio_bytes_out += len(chunk.audio_bytes)
                self.metrics.audio_ms_out += get_audio_duration_ms(chunk.audio_bytes)
                await self._send_message(create_media_message(stream_sid, chunk.audio_bytes))
            if chunk.is_final:
                await self._send_message(create_mark_message(stream_sid))

    async def ask(self, question: str) -> None:
        """Speak a question and arm the silence supervisor with it."""
        if self._closed or self.supervisor is None or not question:
            return

        if self.supervisor.is_duplicate(question):
            self.metrics.asks_suppressed += 1
            logger.debug("Duplicate ask suppressed", call_id=self.call_id, question=question)
        else:
            self.supervisor.record_ask(question)
            await self.speak(question)

        if not self._closed:
            self.supervisor.arm(question)

    async def transfer(self) -> None:
        """Hand the caller to the owner, or promise a call back."""
        if self.session is None:
            return

        if self.config.transfer_enabled and self.session.call_sid and self._twilio_client:
            await self.speak(TRANSFER_LINE)
            redirected = await self._redirect_to_owner()
            if not redirected:
                await self.speak(TRANSFER_FAILED_LINE)
        else:
            logger.info("Transfer not configured", call_id=self.call_id)
            await self.speak(TRANSFER_UNAVAILABLE_LINE)

        await asyncio.sleep(self.config.transfer_drain_seconds)
        await self.hangup()

    async def _redirect_to_owner(self) -> bool:
        """Point the live call at our `/xfer` TwiML via the Twilio REST API."""
        url = f"{self.config.base_url}/xfer"
        call_sid = self.session.call_sid
        try:
            await asyncio.to_thread(
                self._twilio_client.calls(call_sid).update,
                url=url,
                method="POST",
            )
        except TwilioRestException as e:
            logger.error("Twilio transfer failed", call_id=self.call_id, status=e.status, error=str(e))
            return False
        except Exception as e:
            logger.error("Twilio transfer failed", call_id=self.call_id, error=str(e))
            return False

        logger.info("Call redirected to owner", call_id=self.call_id, call_sid=call_sid, url=url)
        return True


async def create_gateway(
    send_message: Callable[[str], Awaitable[None]],
    close_stream: Optional[Callable[[], Awaitable[None]]] = None,
) -> CallGateway:
    """
    Create and start a new call gateway.

    Args:
        send_message: Function to send messages to Twilio WebSocket
        close_stream: Function to close the Twilio WebSocket

    Returns:
        Initialized and started CallGateway
    """
    gateway = CallGateway(send_message, close_stream)
    await gateway.start()
    return gateway
