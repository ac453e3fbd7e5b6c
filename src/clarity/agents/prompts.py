"""Prompt construction for agent turns.

Static instructions come first and task-specific content last, so the
shared prefix stays cacheable across requests.
"""

import logging
from typing import Sequence

from src.clarity.agents.types import TaskContext
from src.clarity.state.models import MessageType, RequestMessage

logger = logging.getLogger(__name__)

ISSUE_TASK_TEMPLATE = """# Issue Implementation Task

You are an autonomous software engineer working in a fresh clone of the
repository. Implement the issue described at the end of this prompt.

## Instructions

1. Explore the codebase and understand the relevant code before editing
2. Implement the smallest complete change that resolves the issue
3. Add or update tests where the project has them
4. Leave changes uncommitted - the system will handle committing, pushing and the pull request

## Summary File

Write `doc/ai-task/issue-{issue_number}.md` describing your work. Its first
line is used as the pull request title. Include a `## Title` section with a
short (under 100 characters) title for the request.

## Clarifying Questions

If the issue is too ambiguous to implement safely, do NOT guess. Write your
questions to `doc/ai-task/issue-{issue_number}-questions.md` and make no other
changes. The questions are posted to the requester and you will be resumed
with their answers.

---

## Issue Context

{issue_context}
"""

PR_CHANGES_TEMPLATE = """# Changes Request for Existing Pull Request

You are working on an existing pull request that needs additional changes.

## Instructions

1. You are already on the PR branch - DO NOT create any new branches
2. Review the current state of the codebase
3. Understand what changes were already made in this PR
4. Implement the requested additional changes
5. Make sure your changes don't break existing functionality
6. Leave changes uncommitted - the system will handle committing and pushing

**IMPORTANT:** Do NOT commit, push, or create a new PR. Just make the file changes and leave them uncommitted. The system will automatically commit and push your changes to update the existing PR.

---

## Context

### Original Issue
- **Issue #{issue_number}**: {title}
- **Original Description**: {description}

### Existing Pull Request
- **PR #{pr_number}**: {pr_url}

### Requested Changes
{requested_changes}
"""


def build_issue_context_section(task: TaskContext) -> str:
    section = (
        f'**Issue #{task.issue_number}:** "{task.issue_title}"\n\n'
        f"### Description\n{task.issue_body}\n\n"
        f"### Labels\n{', '.join(task.labels) or 'None'}\n\n"
        f"### Author\n{task.author}"
    )
    if task.follow_up_request:
        section += (
            f"\n\n### Latest Reply from {task.follow_up_author or 'User'}\n\n"
            f"{task.follow_up_request}"
        )
    if task.conversation_history:
        section += f"\n\n---\n\n### Conversation History\n\n{task.conversation_history}"
    return section


def build_pr_changes_prompt(task: TaskContext) -> str:
    prompt = PR_CHANGES_TEMPLATE.format(
        issue_number=task.issue_number,
        title=task.issue_title,
        description=task.issue_body,
        pr_number=task.existing_pr_number,
        pr_url=task.existing_pr_url,
        requested_changes=task.follow_up_request or "Additional changes requested",
    )
    if task.conversation_history:
        prompt += f"\n### Conversation History\n\n{task.conversation_history}\n"
    return prompt


def build_prompt(task: TaskContext) -> str:
    """Build the prompt for one turn.

    Tasks with an existing pull request get the PR-changes prompt;
    everything else gets the issue implementation prompt.
    """
    if task.has_existing_pr:
        prompt = build_pr_changes_prompt(task)
    else:
        prompt = ISSUE_TASK_TEMPLATE.format(
            issue_number=task.issue_number,
            issue_context=build_issue_context_section(task),
        )

    logger.info(
        "Built prompt",
        extra={
            "request_id": task.request_id,
            "prompt_length": len(prompt),
            "pr_changes": task.has_existing_pr,
            "has_conversation_history": bool(task.conversation_history),
        },
    )
    return prompt


def format_conversation_history(messages: Sequence[RequestMessage]) -> str:
    """Render clarification and follow-up messages for replay into a prompt."""
    lines = []
    for message in messages:
        actor = message.actor_name or "User"
        if message.type == MessageType.CLARIFICATION_ASK:
            role = "Clarity AI"
        elif message.type in (MessageType.CLARIFICATION_ANSWER, MessageType.FOLLOW_UP_REQUEST):
            role = actor
        else:
            role = "System"
        lines.append(f"**{role}:** {message.content}")
    return "\n\n".join(lines)
