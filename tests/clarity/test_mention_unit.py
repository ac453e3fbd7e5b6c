"""Unit tests for mention command parsing and repository resolution."""

import re

import pytest

from src.clarity.mention import (
    ClarityCommandOptions,
    extract_title,
    generate_request_id,
    parse_clarity_command,
    resolve_repository,
)

REPOSITORIES = ["acme/widgets", "acme/gadgets", "other/widgets-api"]


class TestParseClarityCommand:
    def test_plain_prompt(self):
        command = parse_clarity_command("<@U0BOT> fix the login bug")
        assert command.prompt == "fix the login bug"
        assert command.options == ClarityCommandOptions()
        assert not command.force_new_agent

    def test_options(self):
        command = parse_clarity_command(
            "<@U0BOT> [repo=widgets, branch=develop, model=opus, type=BUG] add dark mode"
        )
        assert command.options == ClarityCommandOptions(
            repo="widgets", branch="develop", model="opus", type="bug"
        )
        assert command.prompt == "add dark mode"

    def test_invalid_options_ignored(self):
        command = parse_clarity_command("<@U0BOT> [type=epic, color=red, repo=] do it")
        assert command.options == ClarityCommandOptions()
        assert command.prompt == "do it"

    def test_force_new_agent_keyword(self):
        command = parse_clarity_command("<@U0BOT> agent start over")
        assert command.force_new_agent
        assert command.prompt == "start over"

    def test_agent_word_without_prompt_is_not_keyword(self):
        command = parse_clarity_command("<@U0BOT> agents are great")
        assert not command.force_new_agent
        assert command.prompt == "agents are great"

    def test_all_mentions_removed(self):
        command = parse_clarity_command("<@U0BOT> ask <@U123> about it")
        assert command.prompt == "ask  about it"

    @pytest.mark.parametrize("text", ["", "<@U0BOT>", "<@U0BOT>   ", None])
    def test_empty_prompt(self, text):
        assert parse_clarity_command(text).prompt == ""


class TestResolveRepository:
    @pytest.mark.parametrize(
        "repo_input,expected",
        [
            ("widgets", "acme/widgets"),
            ("WIDGETS", "acme/widgets"),
            ("acme/Gadgets", "acme/gadgets"),
            ("other/widgets-api", "other/widgets-api"),
            ("unknown", None),
            ("other/widgets", None),
            (None, None),
            ("", None),
        ],
    )
    def test_resolution(self, repo_input, expected):
        assert resolve_repository(repo_input, REPOSITORIES) == expected


class TestExtractTitle:
    def test_first_sentence(self):
        assert extract_title("Add dark mode. It should follow the OS setting.") == "Add dark mode."

    def test_no_sentence_end(self):
        assert extract_title("Add dark mode") == "Add dark mode"

    def test_truncated(self):
        assert extract_title("a" * 150) == "a" * 97 + "..."

    def test_custom_length(self):
        assert extract_title("abcdefghij", max_length=8) == "abcde..."


def test_generate_request_id_format():
    first, second = generate_request_id(), generate_request_id()
    assert re.fullmatch(r"fr-\d{13}-[0-9a-z]{7}", first)
    assert first != second
