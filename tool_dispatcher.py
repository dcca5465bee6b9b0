"""Tool invocation dispatch with correlation-id tracking.

Provides ToolCallDispatcher, ToolInvocation and ToolStatus. Every function
call the remote side asks for runs in its own asyncio task so a slow tool
never holds up inbound audio. Each invocation gets at most one response,
tagged with the id the remote side assigned; if the session is gone by the
time the response is ready it is dropped and the invocation is abandoned.

Image work (generation, reimagining the cached camera frame) runs as a
detached job after the tool has already acknowledged, and reports its
outcome through the UI message sink only.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from session_errors import CameraFrameUnavailable, ToolExecutionFailed, UnknownTool

logger = logging.getLogger(__name__)

# Answered call ids remembered for duplicate detection
RECENT_IDS_LIMIT = 256

DEFAULT_REIMAGINE_PROMPT = "A high quality professional portrait of the person"

CREATE_ILLUSTRATION = {
    "name": "create_illustration",
    "description": (
        "Create an illustration or image based on a description. Use this tool "
        "whenever the user asks to generate, create, or draw an image from scratch."
    ),
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "prompt": {"type": "STRING", "description": "Detailed description of the image to create."},
        },
        "required": ["prompt"],
    },
}

REIMAGINE_USER = {
    "name": "reimagine_user",
    "description": (
        "Captures the current view from the user's camera to create a new "
        "AI-generated image based on it. Use this tool triggers for: 'take a photo "
        "of me', 'take a picture', 'capture me', 'selfie', 'make me look like...', "
        "'turn me into...', or 'reimagine this scene'."
    ),
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "prompt": {
                "type": "STRING",
                "description": (
                    "The visual description for the new image. If the user simply asks "
                    "to 'take a photo' without specifying a style, use 'A high quality "
                    "professional portrait of the person'."
                ),
            },
        },
        "required": ["prompt"],
    },
}

TOOL_DECLARATIONS = [CREATE_ILLUSTRATION, REIMAGINE_USER]


class ToolStatus(Enum):
    """Status of a tool invocation."""
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"
    ABANDONED = "abandoned"  # response refused, or dropped before it was written


@dataclass
class ToolInvocation:
    """One remote-requested tool call and its outcome."""
    call_id: str
    name: str
    args: dict = field(default_factory=dict)
    status: ToolStatus = ToolStatus.PENDING
    response: Optional[dict] = None
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None


class ToolCallDispatcher:
    """Runs tool calls concurrently and sends one correlated response each.

    Args:
        image_service: object with async generate(prompt) and
            async transform(image_b64, prompt), both returning an image ref
        send_response: callable(call_id, name, response, on_drop=None) -> bool;
            False means the transport was not connected and nothing was sent.
            on_drop is called if an accepted response is later discarded
        on_message: UI sink for {role, text, metadata?} dicts
        camera_frame: callable returning the cached camera frame or None
        bus: optional EventBus for the session journal
    """

    def __init__(self, image_service, send_response: Callable[..., bool],
                 on_message: Optional[Callable] = None,
                 camera_frame: Optional[Callable[[], Optional[str]]] = None,
                 bus=None):
        self.image_service = image_service
        self._send_response = send_response
        self.on_message = on_message or (lambda msg: None)
        self._camera_frame = camera_frame or (lambda: None)
        self._bus = bus

        self._handlers = {
            "create_illustration": self._create_illustration,
            "reimagine_user": self._reimagine_user,
        }
        # In flight only; an invocation is discarded once answered
        self._invocations: dict[str, ToolInvocation] = {}
        self._answered: OrderedDict[str, None] = OrderedDict()
        # Strong references so pending tasks are not garbage collected
        self._active_tasks: set[asyncio.Task] = set()
        self._active_jobs: set[asyncio.Task] = set()

    @property
    def declarations(self) -> list[dict]:
        return TOOL_DECLARATIONS

    @property
    def in_flight(self) -> int:
        return len(self._active_tasks) + len(self._active_jobs)

    def get(self, call_id) -> Optional[ToolInvocation]:
        """The invocation for call_id while it is still in flight."""
        return self._invocations.get(call_id)

    def _emit(self, msg):
        try:
            self.on_message(msg)
        except Exception as e:
            logger.error("UI message sink error: %s", e)

    def _journal(self, event_type, **payload):
        if self._bus is not None:
            self._bus.emit(event_type, **payload)

    # ── Dispatch ───────────────────────────────────────────────────

    def dispatch(self, tool_call) -> list[ToolInvocation]:
        """Start every function call in a toolCall message. Returns immediately."""
        started = []
        for fc in tool_call.get("functionCalls") or []:
            if not isinstance(fc, dict):
                continue
            call_id = fc.get("id")
            name = fc.get("name") or ""
            if call_id is None:
                logger.warning("Ignoring tool call %r without an id", name)
                continue
            if call_id in self._invocations or call_id in self._answered:
                logger.warning("Duplicate tool call id %s ignored", call_id)
                continue

            invocation = ToolInvocation(call_id=call_id, name=name, args=fc.get("args") or {})
            self._invocations[call_id] = invocation
            logger.info("Tool call %s: %s(%s)", call_id, name, invocation.args)
            self._journal("tool_call", call_id=call_id, name=name, args=invocation.args)

            task = asyncio.create_task(self._run(invocation), name=f"tool-{name}-{call_id}")
            self._active_tasks.add(task)
            task.add_done_callback(self._active_tasks.discard)
            started.append(invocation)
        return started

    async def _run(self, invocation: ToolInvocation):
        try:
            handler = self._handlers.get(invocation.name)
            if handler is None:
                raise UnknownTool(f"Unknown tool: {invocation.name}")
            response = await handler(invocation)
        except CameraFrameUnavailable:
            logger.warning("Tool %s: no camera frame cached", invocation.call_id)
            self._emit({"role": "system", "text": "Error: Camera frame missing."})
            self._finish(invocation, ToolStatus.FAILED, {"error": "Camera frame not available."})
        except (UnknownTool, ToolExecutionFailed) as e:
            logger.error("Tool %s failed: %s", invocation.call_id, e)
            self._emit({"role": "system", "text": f"Error: {e}"})
            self._finish(invocation, ToolStatus.FAILED, {"error": str(e)})
        except Exception as e:
            logger.exception("Tool %s crashed", invocation.call_id)
            self._emit({"role": "system", "text": f"Error: tool {invocation.name} failed."})
            self._finish(invocation, ToolStatus.FAILED, {"error": f"Tool execution failed: {e}"})
        else:
            self._finish(invocation, ToolStatus.RESOLVED, response)

    def _finish(self, invocation: ToolInvocation, status: ToolStatus, response: dict):
        """Send the single terminal response for an invocation, then forget it."""
        if invocation.call_id in self._answered:
            logger.warning("Tool %s already answered, dropping second response",
                           invocation.call_id)
            return
        self._remember(invocation.call_id)
        self._invocations.pop(invocation.call_id, None)
        invocation.response = response
        invocation.completed_at = time.time()

        sent = self._send_response(invocation.call_id, invocation.name, response,
                                   on_drop=lambda: self._abandon(invocation))
        if sent:
            invocation.status = status
            self._journal("tool_response", call_id=invocation.call_id,
                          name=invocation.name, status=status.value)
        else:
            self._abandon(invocation)

    def _remember(self, call_id):
        self._answered[call_id] = None
        while len(self._answered) > RECENT_IDS_LIMIT:
            self._answered.popitem(last=False)

    def _abandon(self, invocation: ToolInvocation):
        invocation.status = ToolStatus.ABANDONED
        logger.info("Tool %s abandoned: session not connected", invocation.call_id)
        self._journal("tool_abandoned", call_id=invocation.call_id, name=invocation.name)

    # ── Tools ──────────────────────────────────────────────────────

    async def _create_illustration(self, invocation: ToolInvocation) -> dict:
        prompt = invocation.args.get("prompt")
        if not prompt:
            raise ToolExecutionFailed("create_illustration requires a prompt")

        self._emit({
            "role": "model",
            "text": f"Initiating visual cortex for: {prompt}...",
            "metadata": {"type": "image_gen", "status": "started"},
        })
        self._spawn_job("image_gen", prompt, lambda: self.image_service.generate(prompt))
        return {"result": "Image generation started. Inform user it will be ready shortly."}

    async def _reimagine_user(self, invocation: ToolInvocation) -> dict:
        # Last-write-wins read of the camera slot; no lock
        frame = self._camera_frame()
        if not frame:
            raise CameraFrameUnavailable("Camera frame not available.")

        prompt = invocation.args.get("prompt") or DEFAULT_REIMAGINE_PROMPT
        self._emit({
            "role": "model",
            "text": f'Processing your image with prompt: "{prompt}"...',
            "metadata": {"type": "reimagine", "status": "started"},
        })
        self._spawn_job("reimagine", prompt, lambda: self.image_service.transform(frame, prompt))
        return {"result": "Photo captured and processing."}

    # ── Detached image jobs ────────────────────────────────────────

    def _spawn_job(self, kind: str, prompt: str, start: Callable[[], Any]):
        task = asyncio.create_task(self._image_job(kind, prompt, start), name=f"image-{kind}")
        self._active_jobs.add(task)
        task.add_done_callback(self._active_jobs.discard)

    async def _image_job(self, kind: str, prompt: str, start: Callable[[], Any]):
        try:
            image = await start()
        except ToolExecutionFailed as e:
            logger.error("%s job failed: %s", kind, e)
            self._journal("tool_failed", kind=kind, error=str(e))
            self._emit({
                "role": "system",
                "text": f"Error: {e}",
                "metadata": {"type": kind, "status": "failed", "error": str(e)},
            })
            return
        except Exception as e:
            logger.exception("%s job crashed", kind)
            self._journal("tool_failed", kind=kind, error=str(e))
            self._emit({
                "role": "system",
                "text": "Error: image generation failed.",
                "metadata": {"type": kind, "status": "failed", "error": str(e)},
            })
            return

        logger.info("%s job finished", kind)
        self._journal("image_ready", kind=kind, prompt=prompt)
        self._emit({
            "role": "system",
            "text": prompt,
            "metadata": {"type": kind, "status": "done", "image": image},
        })

    async def wait_idle(self):
        """Wait for all invocations and image jobs to finish."""
        while self._active_tasks or self._active_jobs:
            await asyncio.gather(*self._active_tasks, *self._active_jobs,
                                 return_exceptions=True)
