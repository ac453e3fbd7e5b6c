"""Text rendering for chat notifications."""

from typing import Optional

REQUEST_TYPE_EMOJI = {
    "feature": "✨",
    "bug": "🐛",
    "refactor": "♻️",
    "docs": "📚",
}

SUMMARY_PREVIEW_LENGTH = 1500
FOLLOW_UP_PREVIEW_LENGTH = 200


def request_type_emoji(request_type: str) -> str:
    return REQUEST_TYPE_EMOJI.get(request_type, "✨")


def format_duration(duration_ms: Optional[int]) -> str:
    """``2m 30s``, ``45s``, or ``N/A`` when unknown or zero."""
    if not duration_ms:
        return "N/A"
    seconds = duration_ms // 1000
    minutes, remaining = divmod(seconds, 60)
    if minutes > 0:
        return f"{minutes}m {remaining}s"
    return f"{seconds}s"


def format_cost_usd(cost_usd: Optional[float]) -> str:
    if cost_usd is None:
        return "N/A"
    return f"${cost_usd:.2f}"


def truncate_text(text: str, max_length: int = 100) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def _stats_line(cost_usd: Optional[float], duration_ms: Optional[int]) -> str:
    return f"_{format_duration(duration_ms)} | {format_cost_usd(cost_usd)}_"


def pull_request_message(
    pr_url: str,
    pr_number: int,
    is_follow_up: bool,
    summary: Optional[str] = None,
    cost_usd: Optional[float] = None,
    duration_ms: Optional[int] = None,
) -> str:
    verb = "updated" if is_follow_up else "created"
    text = f":white_check_mark: *Pull request {verb}:* <{pr_url}|#{pr_number}>"
    if summary:
        text += f"\n\n{truncate_text(summary, SUMMARY_PREVIEW_LENGTH)}"
    return f"{text}\n\n{_stats_line(cost_usd, duration_ms)}"


def no_code_changes_message(
    summary: str,
    issue_number: Optional[int] = None,
    cost_usd: Optional[float] = None,
    duration_ms: Optional[int] = None,
) -> str:
    heading = ":white_check_mark: *Done* (no code changes)"
    if issue_number:
        heading += f" - details posted on issue #{issue_number}"
    return (
        f"{heading}\n\n{truncate_text(summary, SUMMARY_PREVIEW_LENGTH)}\n\n"
        f"{_stats_line(cost_usd, duration_ms)}"
    )


def clarification_message(questions: str) -> str:
    return (
        ":thinking_face: *Clarity AI needs some clarification before continuing:*\n\n"
        f"{questions}\n\n"
        "_Reply in this thread to answer._"
    )


def follow_up_ack_message(author: str, text: str, has_existing_pr: bool) -> str:
    preview = truncate_text(text, FOLLOW_UP_PREVIEW_LENGTH + 3)
    if has_existing_pr:
        return (
            f":pencil2: *Change request from {author}:*\n>{preview}\n\n"
            "_Clarity AI is now working on these changes..._"
        )
    return (
        f":white_check_mark: *Clarification received from {author}:*\n>{preview}\n\n"
        "_Clarity AI is now continuing with the implementation..._"
    )


def feature_request_confirmation(
    request_id: str,
    issue_number: int,
    issue_url: str,
    repository_name: str,
    title: Optional[str] = None,
) -> str:
    text = f":rocket: *Request received* for `{repository_name}`"
    if title:
        text += f": {title}"
    return (
        f"{text}\n"
        f"Tracking issue: <{issue_url}|#{issue_number}>\n"
        f"_Tracking ID: `{request_id}`_"
    )
