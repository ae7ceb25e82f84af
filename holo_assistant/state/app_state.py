"""State enums and their presentation for the assistant."""

from __future__ import annotations

from enum import Enum


class SpeechState(str, Enum):
    """Authoritative state of the speech engine."""

    IDLE = "idle"
    STANDBY = "standby"
    LISTENING = "listening"
    SPEAKING = "speaking"


class ChatMode(str, Enum):
    """Conversation mode owned by the orchestrator."""

    STANDBY = "standby"
    LISTENING = "listening"
    RESPONDING = "responding"
    SPEAKING = "speaking"


class AvatarPose(str, Enum):
    """Visual state of the avatar."""

    IDLE = "idle"
    LISTENING = "listening"
    SPEAKING = "speaking"


def avatar_pose(mode: ChatMode) -> AvatarPose:
    """Standby and responding both render the idle avatar."""
    if mode is ChatMode.LISTENING:
        return AvatarPose.LISTENING
    if mode is ChatMode.SPEAKING:
        return AvatarPose.SPEAKING
    return AvatarPose.IDLE


CONNECTION_STATUS = "Connection error. Check settings."


def status_text(
    mode: ChatMode,
    trigger_phrase: str,
    *,
    permission_error: str | None = None,
    connection_error: str | None = None,
    model_selected: bool = True,
) -> str:
    """Single line of status shown under the avatar."""
    if permission_error:
        return permission_error
    if connection_error or not model_selected:
        return CONNECTION_STATUS
    if mode is ChatMode.STANDBY:
        return f'Say "{trigger_phrase}" or type a message'
    if mode is ChatMode.LISTENING:
        return "Listening..."
    return "Processing..."
