"""Post plan reports to Slack via incoming webhook."""

from urllib.parse import urlparse

import requests

ALLOWED_SLACK_HOSTS = {"hooks.slack.com", "hooks.slack-gov.com"}

# Slack rejects section blocks whose text exceeds 3000 characters.
SECTION_LIMIT = 3000


def _sections(report: str) -> list[dict]:
    chunks = []
    current = ""
    for line in report.splitlines():
        if current and len(current) + len(line) + 1 > SECTION_LIMIT:
            chunks.append(current)
            current = ""
        current += line[:SECTION_LIMIT] + "\n"
    if current.strip():
        chunks.append(current)
    return [{"type": "section", "text": {"type": "mrkdwn", "text": chunk}} for chunk in chunks]


def post_to_slack(
    report: str, webhook_url: str, title: str = "driftplan", timeout: int = 30
) -> None:
    """Post a plan report to a Slack incoming webhook as Block Kit sections."""
    parsed = urlparse(webhook_url)
    if parsed.scheme != "https":
        raise ValueError("Slack webhook URL must use HTTPS")
    if parsed.hostname not in ALLOWED_SLACK_HOSTS:
        raise ValueError(
            f"Invalid Slack webhook host {parsed.hostname!r}: "
            f"must be one of {sorted(ALLOWED_SLACK_HOSTS)}"
        )
    response = requests.post(
        webhook_url,
        json={
            "text": report,
            "blocks": [
                {"type": "header", "text": {"type": "plain_text", "text": title}},
                *_sections(report),
            ],
        },
        timeout=timeout,
    )
    response.raise_for_status()
