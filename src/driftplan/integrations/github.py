"""Keep a single plan-report comment up to date on a GitHub pull request."""

import re

import requests

REPO_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+/[a-zA-Z0-9._-]+$")
COMMENT_MARKER = "<!-- driftplan-report -->"
API_URL = "https://api.github.com"


def _find_report_comment(
    session: requests.Session, repo: str, pr_number: int, timeout: int
) -> int | None:
    url = f"{API_URL}/repos/{repo}/issues/{pr_number}/comments"
    page = 1
    while True:
        response = session.get(url, params={"per_page": 100, "page": page}, timeout=timeout)
        response.raise_for_status()
        comments = response.json()
        for comment in comments:
            if COMMENT_MARKER in comment.get("body", ""):
                return comment["id"]
        if len(comments) < 100:
            return None
        page += 1


def post_to_github_pr(
    body: str,
    repo: str,
    pr_number: int,
    token: str,
    timeout: int = 30,
) -> None:
    """Create or update the plan-report comment on a pull request.

    The comment carries a hidden marker, so re-running a plan edits the
    previous report instead of adding another one.
    """
    if not REPO_PATTERN.match(repo):
        raise ValueError(f"Invalid GitHub repo format: {repo!r} (expected 'owner/repo')")

    session = requests.Session()
    session.headers.update(
        {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github.v3+json",
        }
    )
    payload = {"body": f"{COMMENT_MARKER}\n{body}"}

    comment_id = _find_report_comment(session, repo, pr_number, timeout)
    if comment_id is None:
        response = session.post(
            f"{API_URL}/repos/{repo}/issues/{pr_number}/comments", json=payload, timeout=timeout
        )
    else:
        response = session.patch(
            f"{API_URL}/repos/{repo}/issues/comments/{comment_id}", json=payload, timeout=timeout
        )
    response.raise_for_status()
