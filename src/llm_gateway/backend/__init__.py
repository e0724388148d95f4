"""Everything that knows about the backend executable: argv, process, output format."""

from .decoder import EventDecoder, parse_usage
from .invocation import MAX_OUTPUT_ENV, build_args, build_invocation, turns_since_last_reply, turns_to_prompt
from .runner import BackendProcess, SubprocessRunner

__all__ = [
    "EventDecoder",
    "parse_usage",
    "MAX_OUTPUT_ENV",
    "build_args",
    "build_invocation",
    "turns_since_last_reply",
    "turns_to_prompt",
    "BackendProcess",
    "SubprocessRunner",
]
