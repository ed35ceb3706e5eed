"""Tests for Slack and GitHub integrations."""

from unittest.mock import MagicMock, patch

import pytest

from driftplan.integrations.github import COMMENT_MARKER, post_to_github_pr
from driftplan.integrations.slack import SECTION_LIMIT, post_to_slack

WEBHOOK = "https://hooks.slack.com/services/T00/B00/xxx"


def test_post_to_slack_sends_payload():
    with patch("driftplan.integrations.slack.requests.post") as mock_post:
        mock_post.return_value = MagicMock(status_code=200)

        post_to_slack("## Plan: 1 to create\nDetails", WEBHOOK)

        mock_post.assert_called_once()
        call_kwargs = mock_post.call_args
        assert call_kwargs[0][0] == WEBHOOK
        payload = call_kwargs[1]["json"]
        assert "1 to create" in payload["text"]
        assert payload["blocks"][0]["type"] == "header"
        assert payload["blocks"][0]["text"]["text"] == "driftplan"
        assert "Details" in payload["blocks"][1]["text"]["text"]


def test_post_to_slack_splits_long_reports():
    report = "\n".join("x" * 100 for _ in range(80))
    with patch("driftplan.integrations.slack.requests.post") as mock_post:
        post_to_slack(report, WEBHOOK)

        sections = mock_post.call_args[1]["json"]["blocks"][1:]
        assert len(sections) == 3
        assert all(len(s["text"]["text"]) <= SECTION_LIMIT for s in sections)


def test_post_to_slack_raises_on_failure():
    with patch("driftplan.integrations.slack.requests.post") as mock_post:
        mock_post.return_value = MagicMock(status_code=500, text="Server Error")
        mock_post.return_value.raise_for_status.side_effect = Exception("500 Server Error")

        with pytest.raises(Exception, match="500"):
            post_to_slack("report", WEBHOOK)


def test_post_to_slack_rejects_non_slack_host():
    with pytest.raises(ValueError, match="Invalid Slack webhook host"):
        post_to_slack("report", "https://evil.example.com/webhook")


def test_post_to_slack_rejects_http():
    with pytest.raises(ValueError, match="must use HTTPS"):
        post_to_slack("report", "http://hooks.slack.com/services/T00/B00/xxx")


def test_post_to_slack_allows_gov_cloud():
    with patch("driftplan.integrations.slack.requests.post") as mock_post:
        mock_post.return_value = MagicMock(status_code=200)

        post_to_slack("report", "https://hooks.slack-gov.com/services/T00/B00/xxx")

        mock_post.assert_called_once()


def _session_with_comments(*pages):
    session = MagicMock()
    responses = []
    for page in pages:
        response = MagicMock()
        response.json.return_value = page
        responses.append(response)
    session.get.side_effect = responses
    return session


def test_post_to_github_pr_creates_comment():
    session = _session_with_comments([{"id": 1, "body": "unrelated"}])
    with patch("driftplan.integrations.github.requests.Session", return_value=session):
        post_to_github_pr(
            body="## Plan",
            repo="acme/infrastructure",
            pr_number=42,
            token="test-token-not-real",
        )

    session.post.assert_called_once()
    session.patch.assert_not_called()
    url = session.post.call_args[0][0]
    assert "acme/infrastructure" in url
    assert "/42/" in url
    payload = session.post.call_args[1]["json"]
    assert payload["body"] == f"{COMMENT_MARKER}\n## Plan"
    session.headers.update.assert_called_once()


def test_post_to_github_pr_updates_existing_comment():
    first_page = [{"id": n, "body": "chatter"} for n in range(100)]
    second_page = [{"id": 555, "body": f"{COMMENT_MARKER}\nold plan"}]
    session = _session_with_comments(first_page, second_page)
    with patch("driftplan.integrations.github.requests.Session", return_value=session):
        post_to_github_pr("## New plan", "acme/infrastructure", 7, "token")

    assert session.get.call_count == 2
    session.post.assert_not_called()
    url = session.patch.call_args[0][0]
    assert url.endswith("/repos/acme/infrastructure/issues/comments/555")


def test_post_to_github_pr_raises_on_failure():
    session = _session_with_comments([])
    session.post.return_value.raise_for_status.side_effect = Exception("403 Forbidden")
    with patch("driftplan.integrations.github.requests.Session", return_value=session):
        with pytest.raises(Exception, match="403"):
            post_to_github_pr("report", "owner/repo", 1, "bad-token")


def test_post_to_github_pr_rejects_invalid_repo():
    with pytest.raises(ValueError, match="Invalid GitHub repo format"):
        post_to_github_pr("report", "../../evil-path", 1, "token")


def test_post_to_github_pr_rejects_repo_with_slashes():
    with pytest.raises(ValueError, match="Invalid GitHub repo format"):
        post_to_github_pr("report", "owner/repo/extra", 1, "token")
