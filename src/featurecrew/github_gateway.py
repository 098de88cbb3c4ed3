from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
import re
from typing import Final, cast

from featurecrew.models import Issue, PullRequestReview, ReviewResult
from featurecrew.observability import log_event
from featurecrew.shell import run


LOGGER = logging.getLogger("featurecrew.github_gateway")

_DEPENDENCY_RE: Final[re.Pattern[str]] = re.compile(
    r"(?:depends on|blocked by)\s+#(\d+)", re.IGNORECASE
)
_REQUIRED_REVIEWERS_RE: Final[re.Pattern[str]] = re.compile(
    r"this issue requires:\s*([^\n]+)", re.IGNORECASE
)
_ISSUE_REF_RE: Final[re.Pattern[str]] = re.compile(r"#(\d+)\b")
_PR_URL_RE: Final[re.Pattern[str]] = re.compile(r"/pull/(\d+)")
REVIEW_FOOTER_PREFIX: Final[str] = "Reviewed by featurecrew"


def parse_dependencies(body: str) -> tuple[int, ...]:
    """Issue numbers referenced as "depends on #N" or "blocked by #N", in order, deduped."""
    return tuple(dict.fromkeys(int(match) for match in _DEPENDENCY_RE.findall(body)))


def parse_required_reviewers(body: str) -> tuple[str, ...]:
    match = _REQUIRED_REVIEWERS_RE.search(body)
    if match is None:
        return ()
    names = (name.strip().strip("`*").lower() for name in match.group(1).split(","))
    return tuple(dict.fromkeys(name for name in names if name))


def parse_created_issues(output: str) -> tuple[int, ...]:
    return tuple(dict.fromkeys(int(match) for match in _ISSUE_REF_RE.findall(output)))


@dataclass(frozen=True)
class GitHubGateway:
    """Issue and pull request operations through the ``gh`` CLI, run inside ``repo_path``."""

    repo_path: Path

    def get_issue(self, number: int) -> Issue:
        payload = self._gh_json(
            ["issue", "view", str(number), "--json", "number,title,body,state"]
        )
        issue_obj = _as_object_dict(payload)
        if issue_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for issue")
        return Issue(
            number=_as_int(issue_obj.get("number"), field="number"),
            title=_as_string(issue_obj.get("title")),
            body=_as_string(issue_obj.get("body")),
            state=_as_string(issue_obj.get("state")),
        )

    def list_issue_numbers_with_label(self, label: str, *, limit: int = 100) -> tuple[int, ...]:
        payload = self._gh_json(
            [
                "issue",
                "list",
                "--label",
                label,
                "--state",
                "open",
                "--limit",
                str(limit),
                "--json",
                "number",
            ]
        )
        numbers = sorted(
            _as_int(item.get("number"), field="number") for item in _as_object_list(payload)
        )
        log_event(LOGGER, "github_issues_listed", label=label, issue_count=len(numbers))
        return tuple(numbers)

    def find_open_pr_for_issue(self, issue_number: int) -> int | None:
        payload = self._gh_json(
            [
                "pr",
                "list",
                "--state",
                "open",
                "--search",
                f"#{issue_number}",
                "--json",
                "number,title,body,state",
            ]
        )
        reference = re.compile(rf"#{issue_number}\b")
        for item in _as_object_list(payload):
            text = f"{_as_string(item.get('title'))}\n{_as_string(item.get('body'))}"
            if _as_string(item.get("state")).upper() == "OPEN" and reference.search(text):
                return _as_int(item.get("number"), field="number")
        return None

    def create_pull_request(self, *, title: str, body: str, base: str, head: str) -> int | None:
        out = run(
            [
                "gh",
                "pr",
                "create",
                "--title",
                title,
                "--body",
                body,
                "--base",
                base,
                "--head",
                head,
            ],
            cwd=self.repo_path,
        )
        match = _PR_URL_RE.search(out)
        pr_number = int(match.group(1)) if match else None
        log_event(LOGGER, "github_pr_created", base=base, head=head, pr_number=pr_number)
        return pr_number

    def update_pull_request(self, number: int, *, title: str, body: str) -> None:
        run(
            ["gh", "pr", "edit", str(number), "--title", title, "--body", body],
            cwd=self.repo_path,
        )
        log_event(LOGGER, "github_pr_updated", pr_number=number)

    def merge_pull_request(self, number: int) -> None:
        run(
            ["gh", "pr", "merge", str(number), "--squash", "--delete-branch"],
            cwd=self.repo_path,
        )
        log_event(LOGGER, "github_pr_merged", pr_number=number)

    def close_issue(self, number: int, *, comment: str) -> None:
        run(["gh", "issue", "close", str(number), "--comment", comment], cwd=self.repo_path)
        log_event(LOGGER, "github_issue_closed", issue_number=number)

    def list_pr_reviews(self, number: int) -> tuple[PullRequestReview, ...]:
        payload = self._gh_json(["pr", "view", str(number), "--json", "reviews"])
        pr_obj = _as_object_dict(payload)
        if pr_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for reviews")
        reviews: list[PullRequestReview] = []
        for item in _as_object_list(pr_obj.get("reviews", [])):
            author_obj = _as_object_dict(item.get("author"))
            reviews.append(
                PullRequestReview(
                    author=_as_string(author_obj.get("login") if author_obj else None),
                    state=_as_string(item.get("state")).upper(),
                    submitted_at=_as_string(item.get("submittedAt")),
                    body=_as_string(item.get("body")),
                )
            )
        return tuple(reviews)

    def has_pending_change_requests(self, number: int) -> bool:
        """True when any reviewer's most recent decisive review requests changes."""
        latest: dict[str, PullRequestReview] = {}
        for review in sorted(self.list_pr_reviews(number), key=lambda r: r.submitted_at):
            if review.state in {"APPROVED", "CHANGES_REQUESTED", "DISMISSED"}:
                latest[review.author] = review
        return any(review.state == "CHANGES_REQUESTED" for review in latest.values())

    def current_login(self) -> str:
        return run(["gh", "api", "user", "--jq", ".login"], cwd=self.repo_path).strip()

    def submit_review(
        self, number: int, *, result: ReviewResult, body: str, reviewer_id: str, profile: str
    ) -> None:
        footer = f"\n\n---\n{REVIEW_FOOTER_PREFIX} ({reviewer_id}, {profile} profile)"
        pr_author = self._pr_author(number)
        if pr_author and pr_author == self.current_login():
            # GitHub refuses approve/request-changes on your own pull request.
            verdict = "✅ APPROVE" if result == "APPROVE" else "❌ REJECT"
            run(
                ["gh", "pr", "comment", str(number), "--body", f"{verdict}\n\n{body}{footer}"],
                cwd=self.repo_path,
            )
        else:
            flag = "--approve" if result == "APPROVE" else "--request-changes"
            run(
                ["gh", "pr", "review", str(number), flag, "--body", f"{body}{footer}"],
                cwd=self.repo_path,
            )
        log_event(
            LOGGER, "github_review_submitted", pr_number=number, result=result, reviewer=reviewer_id
        )

    def _pr_author(self, number: int) -> str:
        payload = self._gh_json(["pr", "view", str(number), "--json", "author"])
        pr_obj = _as_object_dict(payload)
        author_obj = _as_object_dict(pr_obj.get("author")) if pr_obj else None
        return _as_string(author_obj.get("login") if author_obj else None)

    def _gh_json(self, args: list[str]) -> object:
        out = run(["gh", *args], cwd=self.repo_path)
        try:
            return json.loads(out) if out.strip() else None
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"Unexpected GitHub response for gh {args[0]} {args[1]}") from exc


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_object_list(value: object) -> list[dict[str, object]]:
    if not isinstance(value, list):
        raise RuntimeError("Unexpected GitHub response: expected list")
    return [item for item in (_as_object_dict(entry) for entry in value) if item is not None]


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")
