"""Property-based tests for mention parsing.

Properties:
- Titles never exceed their length limit.
- A resolved repository is always one of the configured names.
- Options parsed from a bracket never leak into the prompt.
"""

from hypothesis import given, settings, strategies as st

from src.clarity.mention import (
    VALID_REQUEST_TYPES,
    extract_title,
    parse_clarity_command,
    resolve_repository,
)

name_part = st.text(
    alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyzABCDEFGHIJ0123456789-_"),
    min_size=1,
    max_size=20,
)
full_names = st.builds(lambda owner, repo: f"{owner}/{repo}", name_part, name_part)


@settings(max_examples=100)
@given(prompt=st.text(max_size=400), limit=st.integers(min_value=4, max_value=200))
def test_title_within_limit(prompt, limit):
    assert len(extract_title(prompt, max_length=limit)) <= limit


@settings(max_examples=100)
@given(available=st.lists(full_names, max_size=8), repo_input=st.one_of(name_part, full_names))
def test_resolution_only_returns_configured_names(available, repo_input):
    resolved = resolve_repository(repo_input, available)
    assert resolved is None or resolved in available


@settings(max_examples=100)
@given(available=st.lists(full_names, min_size=1, max_size=8), data=st.data())
def test_configured_full_name_always_resolves(available, data):
    chosen = data.draw(st.sampled_from(available))
    resolved = resolve_repository(chosen.upper(), available)
    assert resolved is not None
    assert resolved.lower() == chosen.lower()


@settings(max_examples=100)
@given(
    repo=name_part,
    request_type=st.sampled_from(VALID_REQUEST_TYPES),
    prompt=st.text(
        alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyz "), min_size=1, max_size=80
    ).filter(lambda s: s.strip() and not s.strip().startswith("agent ")),
)
def test_options_do_not_leak_into_prompt(repo, request_type, prompt):
    command = parse_clarity_command(f"<@U0BOT> [repo={repo}, type={request_type}] {prompt}")
    assert command.options.repo == repo
    assert command.options.type == request_type
    assert command.prompt == prompt.strip()
