"""File-based message bus between workers and the operator.

Each message is one JSON file in .swarm/communication/ named
agent_<message_id>.json. Answers live beside it as
response_<message_id>.json; a message that requires a response is
pending exactly as long as that file is missing.
"""

import re
import secrets
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from .event_log import EventLogger
from .models import AgentMessage, MessagePriority, MessageResponse, MessageType
from .workspace import SwarmWorkspace, atomic_write_json, read_json

DEFAULT_TIMEOUT = 120
POLL_INTERVAL = 1.0

UNSAFE_ID_CHARS = re.compile(r"[^\w.-]")


def agent_role_from_id(agent_id: str) -> str:
    """Workers are identified as <role>-<suffix>; the prefix is the role."""
    return agent_id.split("-", 1)[0] if "-" in agent_id else "general"


class MessageBus:
    """Send, list and answer messages through the communication directory."""

    def __init__(self, workspace: SwarmWorkspace, logger: Optional[EventLogger] = None):
        self.workspace = workspace
        self.directory = workspace.communication_dir
        self.logger = logger or EventLogger(component="messages", quiet=True)

    def _message_file(self, message_id: str) -> Path:
        return self.directory / f"agent_{message_id}.json"

    def _response_file(self, message_id: str) -> Path:
        return self.directory / f"response_{message_id}.json"

    def _generate_id(self, agent_id: str) -> str:
        safe_agent = UNSAFE_ID_CHARS.sub("_", agent_id) or "agent"
        return f"{safe_agent}_{int(time.time())}_{secrets.token_hex(3)}"

    # =========================================================================
    # Sending
    # =========================================================================

    def send(
        self,
        agent_id: str,
        type: Union[MessageType, str],
        content: str,
        requires_response: bool = False,
        quick_actions: Optional[list[str]] = None,
        priority: Union[MessagePriority, str] = MessagePriority.MEDIUM,
        role: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> str:
        """Post a message.

        Args:
            agent_id: Sender, conventionally <role>-<pid>
            type: question, status, progress or decision
            content: Message text
            requires_response: Whether the sender waits for an answer
            quick_actions: Suggested one-click answers
            priority: low, medium, high or critical
            role: Sender role (derived from agent_id when omitted)
            context: Extra structured data
            timeout: Seconds the sender is willing to wait

        Returns:
            The new message id
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        message = AgentMessage(
            id=self._generate_id(agent_id),
            agent_id=agent_id,
            role=role or agent_role_from_id(agent_id),
            type=MessageType(type),
            content=content,
            priority=MessagePriority(priority),
            requires_response=requires_response,
            timeout=timeout,
            quick_actions=quick_actions or [],
            context=context or {},
        )
        atomic_write_json(self._message_file(message.id), message.model_dump(mode="json"))

        self.logger.info(
            f"{message.role} agent sent {message.type.value}: {content[:80]}",
            message_id=message.id,
            agent_id=agent_id,
        )
        return message.id

    def question(
        self,
        agent_id: str,
        question: str,
        quick_actions: Optional[list[str]] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> str:
        """Ask the operator something and expect an answer."""
        return self.send(
            agent_id, MessageType.QUESTION, question,
            requires_response=True,
            quick_actions=quick_actions,
            priority=MessagePriority.HIGH,
            timeout=timeout,
        )

    def status(self, agent_id: str, status: str, details: Optional[dict] = None) -> str:
        """Post a status update."""
        return self.send(agent_id, MessageType.STATUS, status, context=details)

    def progress(
        self,
        agent_id: str,
        message: str,
        percentage: Optional[int] = None,
        eta: Optional[str] = None,
    ) -> str:
        """Post a progress update. Counts as forward progress for stuck detection."""
        context = {}
        if percentage is not None:
            context["percentage"] = max(0, min(100, int(percentage)))
        if eta:
            context["eta"] = eta
        return self.send(
            agent_id, MessageType.PROGRESS, message,
            priority=MessagePriority.LOW,
            context=context,
        )

    def decision(
        self,
        agent_id: str,
        prompt: str,
        options: list[str],
        default: Optional[str] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> str:
        """Ask the operator to pick one of several options."""
        return self.send(
            agent_id, MessageType.DECISION, prompt,
            requires_response=True,
            quick_actions=options,
            priority=MessagePriority.HIGH,
            context={"default": default} if default else {},
            timeout=timeout,
        )

    # =========================================================================
    # Reading
    # =========================================================================

    def _load_message(self, path: Path) -> Optional[AgentMessage]:
        data = read_json(path)
        if data is None:
            return None
        try:
            return AgentMessage.model_validate(data)
        except ValidationError:
            return None

    def _all_messages(self) -> list[AgentMessage]:
        if not self.directory.exists():
            return []
        messages = []
        for path in self.directory.glob("agent_*.json"):
            message = self._load_message(path)
            if message:
                messages.append(message)
        return sorted(messages, key=lambda m: m.timestamp)

    def get_message(self, message_id: str) -> Optional[AgentMessage]:
        path = self._message_file(message_id)
        return self._load_message(path) if path.exists() else None

    def is_answered(self, message_id: str) -> bool:
        return self._response_file(message_id).exists()

    def pending_messages(self) -> list[AgentMessage]:
        """Messages waiting for an answer, oldest first."""
        return [
            m for m in self._all_messages()
            if m.requires_response and not self.is_answered(m.id)
        ]

    def recent_messages(self, limit: int = 10) -> list[AgentMessage]:
        """Most recent messages, newest last."""
        return self._all_messages()[-limit:] if limit > 0 else []

    def messages_for_agent(self, agent_id: str) -> list[AgentMessage]:
        return [m for m in self._all_messages() if m.agent_id == agent_id]

    def last_activity(self, agent_id: str) -> Optional[datetime]:
        """Timestamp of the agent's latest progress or status message."""
        timestamps = [
            m.timestamp for m in self.messages_for_agent(agent_id)
            if m.type in (MessageType.PROGRESS, MessageType.STATUS)
        ]
        return max(timestamps) if timestamps else None

    # =========================================================================
    # Responding
    # =========================================================================

    def respond(self, message_id: str, response: str) -> bool:
        """Answer a message.

        Returns:
            False if the message doesn't exist or was already answered
        """
        if not self._message_file(message_id).exists():
            self.logger.warn(f"Cannot respond to unknown message {message_id}")
            return False
        if self.is_answered(message_id):
            self.logger.warn(f"Message {message_id} already has a response")
            return False

        answer = MessageResponse(message_id=message_id, response=response)
        atomic_write_json(self._response_file(message_id), answer.model_dump(mode="json"))
        self.logger.info(f"Responded to {message_id}", message_id=message_id)
        return True

    def get_response(self, message_id: str) -> Optional[MessageResponse]:
        data = read_json(self._response_file(message_id))
        if data is None:
            return None
        try:
            return MessageResponse.model_validate(data)
        except ValidationError:
            return None

    def await_response(
        self,
        message_id: str,
        timeout: Optional[float] = None,
        poll_interval: float = POLL_INTERVAL,
    ) -> Optional[str]:
        """Block until a response arrives.

        Args:
            message_id: Message to wait on
            timeout: Seconds to wait (default: the message's own timeout)
            poll_interval: Seconds between checks

        Returns:
            Response text, or None on timeout
        """
        if timeout is None:
            message = self.get_message(message_id)
            timeout = message.timeout if message else DEFAULT_TIMEOUT

        deadline = time.monotonic() + timeout
        while True:
            answer = self.get_response(message_id)
            if answer is not None:
                return answer.response
            if time.monotonic() >= deadline:
                self.logger.debug(f"No response to {message_id} within {timeout}s")
                return None
            time.sleep(poll_interval)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def cleanup_older_than(self, days: int = 7) -> int:
        """Delete message and response files older than the cutoff.

        Files that can't be parsed are deleted as well.

        Returns:
            Number of files removed
        """
        if not self.directory.exists():
            return 0

        cutoff = datetime.now() - timedelta(days=days)
        removed = 0
        for path in list(self.directory.glob("agent_*.json")) + list(self.directory.glob("response_*.json")):
            data = read_json(path)
            try:
                timestamp = datetime.fromisoformat(data["timestamp"]) if data else None
            except (KeyError, TypeError, ValueError):
                timestamp = None

            if timestamp is None or timestamp < cutoff:
                path.unlink(missing_ok=True)
                removed += 1

        if removed:
            self.logger.info(f"Removed {removed} message files older than {days} days")
        return removed
