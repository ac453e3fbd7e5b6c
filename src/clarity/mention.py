"""Parsing of ``@clarity`` mention commands.

Format::

    @clarity [repo=owner/repo, branch=main, model=opus, type=bug] prompt
    @clarity agent start over with a new approach

Options are optional and comma-separated inside a leading bracket. The
``agent`` keyword forces a new request even inside a thread that already
has an active one.
"""

import random
import re
import string
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

MENTION_PATTERN = re.compile(r"<@[A-Z0-9]+>", re.IGNORECASE)
OPTIONS_PATTERN = re.compile(r"^\[(.*?)\]")
FIRST_SENTENCE_PATTERN = re.compile(r"^[^.!?]+[.!?]?")

VALID_REQUEST_TYPES = ("feature", "bug", "refactor", "docs", "question")
FORCE_NEW_AGENT_KEYWORD = "agent "
DEFAULT_TITLE_LENGTH = 100

_ID_ALPHABET = string.digits + string.ascii_lowercase

HELP_TEXT = (
    "Please provide a description of what you'd like me to do. For example:\n"
    "`@clarity fix the login bug`\n"
    "`@clarity [repo=myrepo] add dark mode support`\n\n"
    "_Use `@clarity agent <prompt>` inside a thread to start a new request._"
)


@dataclass(frozen=True)
class ClarityCommandOptions:
    repo: Optional[str] = None
    branch: Optional[str] = None
    model: Optional[str] = None
    type: Optional[str] = None


@dataclass(frozen=True)
class ClarityCommand:
    """A parsed mention.

    Attributes:
        options: Bracketed options.
        prompt: Text after the mention and options.
        force_new_agent: True when the prompt started with ``agent``.
    """

    options: ClarityCommandOptions = field(default_factory=ClarityCommandOptions)
    prompt: str = ""
    force_new_agent: bool = False


def parse_clarity_command(text: str) -> ClarityCommand:
    """Parse a mention's message text.

    Unknown option keys, pairs without a value, and request types outside
    VALID_REQUEST_TYPES are ignored.

    Example:
        >>> parse_clarity_command("<@U123> [repo=widgets] add dark mode").options.repo
        'widgets'
    """
    remainder = MENTION_PATTERN.sub("", text or "").strip()

    values = {}
    match = OPTIONS_PATTERN.match(remainder)
    if match:
        for pair in match.group(1).split(","):
            key, _, value = pair.partition("=")
            key, value = key.strip().lower(), value.strip()
            if not key or not value:
                continue
            if key in ("repo", "branch", "model"):
                values[key] = value
            elif key == "type" and value.lower() in VALID_REQUEST_TYPES:
                values["type"] = value.lower()
        remainder = remainder[match.end():].strip()

    force_new_agent = False
    if remainder.lower().startswith(FORCE_NEW_AGENT_KEYWORD):
        force_new_agent = True
        remainder = remainder[len(FORCE_NEW_AGENT_KEYWORD):].strip()

    return ClarityCommand(
        options=ClarityCommandOptions(**values),
        prompt=remainder,
        force_new_agent=force_new_agent,
    )


def resolve_repository(repo_input: Optional[str], available: Iterable[str]) -> Optional[str]:
    """Match user input against configured ``owner/repo`` names.

    ``owner/repo`` input must match a full name; bare input matches the
    repository part. Matching is case-insensitive and returns the
    configured spelling.
    """
    if not repo_input:
        return None

    wanted = repo_input.strip().lower()
    for full_name in available:
        candidate = full_name.lower() if "/" in wanted else full_name.split("/")[-1].lower()
        if candidate == wanted:
            return full_name
    return None


def extract_title(prompt: str, max_length: int = DEFAULT_TITLE_LENGTH) -> str:
    """First sentence of the prompt, truncated with ``...``."""
    match = FIRST_SENTENCE_PATTERN.match(prompt)
    title = match.group(0).strip() if match else prompt
    if len(title) > max_length:
        return title[: max_length - 3] + "..."
    return title


def generate_request_id() -> str:
    """``fr-<epoch ms>-<7 base36 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"fr-{int(time.time() * 1000)}-{suffix}"
