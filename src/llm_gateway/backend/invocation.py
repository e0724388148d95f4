"""
Render a normalized ChatRequest into one backend invocation.

The conversation travels on stdin; the argument vector only carries flags,
so nothing a caller sends is ever interpreted by a shell or parsed as an
option.
"""

from __future__ import annotations

from ..config import GatewaySettings
from ..types import BackendInvocation, ChatRequest, Role, Turn

MAX_OUTPUT_ENV = "CLAUDE_CODE_MAX_OUTPUT_TOKENS"


def turns_to_prompt(turns: list[Turn], system: str | None = None) -> str:
    """
    Flatten a conversation into the backend's single prompt.

    - System text is wrapped in ``<system>`` tags at the top
    - User turns are included as bare text
    - Assistant turns are wrapped in ``<previous_response>`` tags
    """
    parts: list[str] = []

    if system:
        parts.append(f"<system>\n{system}\n</system>\n")

    for turn in turns:
        if turn.role == Role.ASSISTANT:
            parts.append(f"<previous_response>\n{turn.text}\n</previous_response>\n")
        else:
            parts.append(turn.text)

    return "\n".join(parts).strip()


def turns_since_last_reply(turns: list[Turn]) -> list[Turn]:
    """Turns after the last assistant reply; a resumed session already holds the rest."""
    for index in range(len(turns) - 1, -1, -1):
        if turns[index].role == Role.ASSISTANT:
            return turns[index + 1:]
    return list(turns)


def build_args(
    settings: GatewaySettings,
    model_alias: str,
    *,
    resume_session_id: str | None = None,
    persist_session: bool = False,
) -> tuple[str, ...]:
    args = [
        *settings.backend_command,
        "--print",
        "--output-format",
        "stream-json",
        "--verbose",
        "--include-partial-messages",
        "--model",
        model_alias,
        "--permission-mode",
        settings.permission_mode,
    ]

    if resume_session_id:
        args.extend(["--resume", resume_session_id])
    elif not persist_session:
        args.append("--no-session-persistence")

    return tuple(args)


def build_invocation(
    request: ChatRequest,
    settings: GatewaySettings,
    resume_session_id: str | None = None,
) -> BackendInvocation:
    """
    Build the argument vector, stdin payload and environment for one request.

    When a prior backend session is resumed, only the new turns are sent and
    the system instruction is left to the stored session.
    """
    if resume_session_id:
        turns = turns_since_last_reply(request.turns) or request.turns[-1:]
        prompt = turns_to_prompt(turns)
    else:
        prompt = turns_to_prompt(request.turns, request.system)

    env: dict[str, str] = {}
    if request.max_tokens is not None:
        env[MAX_OUTPUT_ENV] = str(request.max_tokens)

    return BackendInvocation(
        argv=build_args(
            settings,
            request.model.cli_alias,
            resume_session_id=resume_session_id,
            persist_session=request.continuity_key is not None,
        ),
        stdin=prompt.encode("utf-8"),
        cwd=settings.resolved_cwd,
        env=env,
        resume_session_id=resume_session_id,
    )


__all__ = [
    "MAX_OUTPUT_ENV",
    "turns_to_prompt",
    "turns_since_last_reply",
    "build_args",
    "build_invocation",
]
