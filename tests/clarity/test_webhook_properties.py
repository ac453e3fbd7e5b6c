"""Property-based tests for webhook parsing and verification.

Properties:
- Issue payloads with a supported action always parse, field for field.
- Request ids derived from an issue are stable and distinct per issue.
- A body signed with the configured secret always verifies; any other
  body does not.
- Slack signatures verify inside the replay window only.
"""

import hashlib
import hmac
import string

from hypothesis import assume, given, settings, strategies as st

from src.clarity.webhook.handler import WebhookHandler
from src.clarity.webhook.models import GitHubIssueEvent, IssueAction, github_request_id
from src.clarity.webhook.slack import MAX_REQUEST_AGE_SECONDS, verify_slack_signature


ALNUM = string.ascii_letters + string.digits

logins = st.text(alphabet=ALNUM + "-", min_size=1, max_size=39).filter(
    lambda s: not s.startswith("-") and not s.endswith("-") and "--" not in s
)
repo_names = st.text(alphabet=ALNUM + "-_.", min_size=1, max_size=100).filter(
    lambda s: not s.startswith(".")
)
label_names = st.text(alphabet=ALNUM + "-_: ", min_size=1, max_size=50).filter(str.strip)


@st.composite
def issue_payloads(draw: st.DrawFn) -> dict:
    """An ``issues`` delivery with a supported action.

    The body is sometimes null, as GitHub sends for issues without one.
    """
    action = draw(st.sampled_from([a.value for a in IssueAction]))
    payload = {
        "action": action,
        "issue": {
            "id": draw(st.integers(min_value=1, max_value=10**10)),
            "number": draw(st.integers(min_value=1, max_value=1_000_000)),
            "title": draw(st.text(min_size=1, max_size=200).filter(str.strip)),
            "body": draw(st.none() | st.text(max_size=2000)),
            "labels": [{"name": name} for name in draw(st.lists(label_names, max_size=20))],
            "user": {"login": draw(logins)},
        },
        "repository": {"name": draw(repo_names), "owner": {"login": draw(logins)}},
    }
    if action == IssueAction.LABELED.value:
        payload["label"] = {"name": draw(label_names)}
    return payload


class TestIssueParsing:
    """Supported issue deliveries parse, and every field matches the payload."""

    @given(payload=issue_payloads())
    @settings(max_examples=100)
    def test_supported_actions_parse(self, payload: dict) -> None:
        event = WebhookHandler(secret="test-secret").parse_issue_event(payload)

        assert isinstance(event, GitHubIssueEvent)
        assert event.action == IssueAction(payload["action"])

    @given(payload=issue_payloads())
    @settings(max_examples=100)
    def test_fields_match_payload(self, payload: dict) -> None:
        result = WebhookHandler().parse_issue_event(payload)
        issue = payload["issue"]

        assert result is not None
        assert result.issue_number == issue["number"]
        assert result.issue_global_id == issue["id"]
        assert result.title == issue["title"].strip()
        assert result.body == (issue["body"] or "")
        assert result.labels == [label["name"].strip() for label in issue["labels"]]
        assert result.repository == payload["repository"]["name"]
        assert result.owner == payload["repository"]["owner"]["login"]
        assert result.author == issue["user"]["login"]
        if payload["action"] == "labeled":
            assert result.added_label == payload["label"]["name"].strip()
        else:
            assert result.added_label is None

    @given(
        payload=issue_payloads(),
        action=st.text(max_size=20).filter(lambda a: a not in ("opened", "labeled")),
    )
    @settings(max_examples=100)
    def test_unsupported_actions_ignored(self, payload: dict, action: str) -> None:
        payload["action"] = action
        assert WebhookHandler().parse_issue_event(payload) is None


class TestRequestIds:
    @given(owner=logins, repo=repo_names, number=st.integers(min_value=1))
    @settings(max_examples=100)
    def test_request_id_is_stable(self, owner: str, repo: str, number: int) -> None:
        first = github_request_id(owner, repo, number)
        assert first == github_request_id(owner.upper(), repo.upper(), number)
        assert first == first.lower()

    @given(
        owner=logins,
        repo=repo_names,
        numbers=st.tuples(st.integers(min_value=1), st.integers(min_value=1)),
    )
    @settings(max_examples=100)
    def test_distinct_issues_get_distinct_ids(self, owner: str, repo: str, numbers) -> None:
        first, second = numbers
        assume(first != second)
        assert github_request_id(owner, repo, first) != github_request_id(owner, repo, second)


class TestSignatures:
    @given(secret=st.text(min_size=1, max_size=64), body=st.binary(max_size=2048))
    @settings(max_examples=100)
    def test_github_signature_round_trip(self, secret: str, body: bytes) -> None:
        handler = WebhookHandler(secret=secret)
        digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

        assert handler.verify_signature(body, f"sha256={digest}")
        assert not handler.verify_signature(body + b"x", f"sha256={digest}")

    @given(
        secret=st.text(min_size=1, max_size=64),
        body=st.binary(max_size=2048),
        skew=st.integers(min_value=-MAX_REQUEST_AGE_SECONDS * 3, max_value=MAX_REQUEST_AGE_SECONDS * 3),
    )
    @settings(max_examples=100)
    def test_slack_signature_window(self, secret: str, body: bytes, skew: int) -> None:
        sent_at = 1_700_000_000
        base = f"v0:{sent_at}:".encode("utf-8") + body
        signature = "v0=" + hmac.new(secret.encode("utf-8"), base, hashlib.sha256).hexdigest()

        verified = verify_slack_signature(secret, body, str(sent_at), signature, now=sent_at + skew)

        assert verified is (abs(skew) <= MAX_REQUEST_AGE_SECONDS)
