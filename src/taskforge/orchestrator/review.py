"""Review detail aggregation, paged diff browsing and review actions."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from fnmatch import fnmatchcase
from pathlib import Path

from taskforge.orchestrator.errors import (
    NotInReviewError,
    ScopeOverrideRequiredError,
    ValidationError,
)
from taskforge.orchestrator.identifiers import branch_for_task, safe_join, validate_task_id
from taskforge.orchestrator.lifecycle import TaskLifecycleOrchestrator
from taskforge.orchestrator.models import (
    Alignment,
    DiffFileStat,
    ReviewDetail,
    StoryDrift,
    TaskStatus,
    TaskView,
)
from taskforge.orchestrator.repository import OrchestratorRepository, story_hash
from taskforge.orchestrator.session import read_log_from_offset
from taskforge.orchestrator.vcs import GitClient

logger = logging.getLogger(__name__)

DEFAULT_TESTS_SUMMARY = "Tests: unknown"
NO_FILES_TO_REVERT = "no files to revert"
FEEDBACK_EVENT = "review_feedback"
EXPLANATION_EVENT = "mvp_explanation"

_TEST_RESULT_RE = re.compile(
    r"(\b\d+\s+(?:passed|failed|errors?|skipped)\b"
    r"|^\s*tests?\s*:"
    r"|^\s*(?:ok|FAIL|PASS)\s"
    r"|\bFAILED\b"
    r"|\ball tests passed\b)",
    re.IGNORECASE,
)


def summarize_tests(lines: Iterable[str]) -> str:
    """Last log line that looks like a test-run result."""

    summary: str | None = None
    for line in lines:
        stripped = line.strip()
        if stripped and _TEST_RESULT_RE.search(stripped):
            summary = stripped
    if summary is None:
        return DEFAULT_TESTS_SUMMARY
    if summary.lower().startswith("tests"):
        return summary
    return f"Tests: {summary}"


def out_of_scope_files(scope_paths: Sequence[str], files: Iterable[DiffFileStat]) -> list[str]:
    """Touched paths matching none of the scope globs (a trailing ``/`` means a subtree)."""

    return [item.path for item in files if not _in_scope(item.path, scope_paths)]


def classify_alignment(
    *,
    mvp_included: bool | None,
    scope_paths: Sequence[str],
    files: Sequence[DiffFileStat],
) -> Alignment:
    if mvp_included is False:
        return Alignment.OUT
    if scope_paths:
        return Alignment.OUT if out_of_scope_files(scope_paths, files) else Alignment.MVP
    if mvp_included is True:
        return Alignment.MVP
    return Alignment.UNKNOWN


def story_drift(stored_hash: str | None, current_text: str | None) -> StoryDrift:
    if not stored_hash or current_text is None:
        return StoryDrift.UNKNOWN
    return StoryDrift.OK if story_hash(current_text) == stored_hash else StoryDrift.CHANGED


def _in_scope(path: str, scope_paths: Sequence[str]) -> bool:
    for pattern in scope_paths:
        if pattern.endswith("/") and path.startswith(pattern):
            return True
        if fnmatchcase(path, pattern):
            return True
    return False


class ReviewLoader:
    """Rebuilds ReviewDetail from the store, git and the session log on every call."""

    def __init__(
        self,
        repository: OrchestratorRepository,
        git: GitClient,
        *,
        base_branch: str | None = None,
        branch_prefix: str = "feature/",
        stories_dir: Path | None = None,
    ) -> None:
        self.repository = repository
        self.git = git
        self.base_branch = base_branch
        self.branch_prefix = branch_prefix
        self.stories_dir = stories_dir

    def resolve_base(self) -> str:
        return self.base_branch or self.git.current_branch()

    def load(self, task_id: str) -> ReviewDetail:
        validate_task_id(task_id)
        task = self.repository.get_task(task_id)
        task_branch = task.branch or branch_for_task(task_id, prefix=self.branch_prefix)
        base = self.resolve_base()
        files = self.git.diff_numstat(base, task_branch)
        events = self.repository.list_events(task_id)
        current_story = self.current_story(task)
        return ReviewDetail(
            task_id=task.task_id,
            title=task.title,
            summary=task.summary,
            user_story=current_story or "",
            story_drift=story_drift(task.user_story_hash, current_story),
            alignment=classify_alignment(
                mvp_included=task.mvp_included,
                scope_paths=task.scope_paths,
                files=files,
            ),
            acceptance_criteria=list(task.acceptance_criteria),
            files=files,
            tests_summary=self._tests_summary(task_id),
            base_branch=base,
            task_branch=task_branch,
            override_acknowledged=task.mvp_override_acknowledged,
            explanations=[
                str(event.details.get("text", ""))
                for event in events
                if event.event_type == EXPLANATION_EVENT
            ],
            feedback=[
                str(event.details.get("feedback", ""))
                for event in events
                if event.event_type == FEEDBACK_EVENT
            ],
        )

    def current_story(self, task: TaskView) -> str | None:
        """Story file on disk wins over the stored text."""

        if self.stories_dir is not None:
            story_file = safe_join(self.stories_dir, f"{task.task_id}.md")
            if story_file.exists():
                return story_file.read_text("utf-8")
        return task.user_story

    def _tests_summary(self, task_id: str) -> str:
        session = self.repository.find_session_by_task(task_id)
        if session is None:
            return DEFAULT_TESTS_SUMMARY
        lines, _ = read_log_from_offset(Path(session.log_path), 0)
        return summarize_tests(lines)


class ReviewDiffBrowser:
    """Per-file unified diffs, loaded lazily, each with its own scroll offset."""

    def __init__(
        self,
        git: GitClient,
        *,
        base: str,
        branch: str,
        files: Sequence[DiffFileStat],
        page_size: int = 16,
    ) -> None:
        if page_size <= 0:
            raise ValidationError("Diff page size must be positive.")
        self.git = git
        self.base = base
        self.branch = branch
        self.files = list(files)
        self.page_size = page_size
        self.index = 0
        self._cache: dict[str, list[str]] = {}
        self._offsets: dict[str, int] = {}

    @classmethod
    def for_detail(
        cls,
        git: GitClient,
        detail: ReviewDetail,
        *,
        page_size: int = 16,
    ) -> ReviewDiffBrowser:
        return cls(
            git,
            base=detail.base_branch,
            branch=detail.task_branch,
            files=detail.files,
            page_size=page_size,
        )

    @property
    def current_file(self) -> DiffFileStat | None:
        if not self.files:
            return None
        return self.files[self.index]

    @property
    def offset(self) -> int:
        current = self.current_file
        return self._offsets.get(current.path, 0) if current is not None else 0

    def select(self, index: int) -> None:
        if self.files:
            self.index = max(0, min(index, len(self.files) - 1))

    def select_path(self, path: str) -> None:
        for index, item in enumerate(self.files):
            if item.path == path:
                self.index = index
                return
        raise ValidationError(f"File is not part of this diff: {path}")

    def next_file(self) -> None:
        self.select(self.index + 1)

    def prev_file(self) -> None:
        self.select(self.index - 1)

    def lines(self) -> list[str]:
        current = self.current_file
        if current is None:
            return []
        if current.path not in self._cache:
            diff = self.git.unified_diff(self.base, self.branch, current.path)
            self._cache[current.path] = diff.splitlines()
        return self._cache[current.path]

    def page(self) -> list[str]:
        offset = self.offset
        return self.lines()[offset : offset + self.page_size]

    def scroll(self, delta: int) -> None:
        current = self.current_file
        if current is None:
            return
        self._offsets[current.path] = self._clamp(self.offset + delta)

    def page_down(self) -> None:
        self.scroll(self.page_size)

    def page_up(self) -> None:
        self.scroll(-self.page_size)

    def top(self) -> None:
        self.scroll(-self.offset)

    def bottom(self) -> None:
        self.scroll(len(self.lines()))

    def _clamp(self, offset: int) -> int:
        max_offset = max(0, len(self.lines()) - self.page_size)
        return max(0, min(offset, max_offset))


class ReviewWorkflow:
    """Operator review actions layered over the lifecycle orchestrator."""

    def __init__(self, orchestrator: TaskLifecycleOrchestrator, loader: ReviewLoader) -> None:
        self.orchestrator = orchestrator
        self.loader = loader
        self.repository = orchestrator.repository

    def detail(self, task_id: str) -> ReviewDetail:
        return self.loader.load(task_id)

    def add_feedback(self, task_id: str, feedback: str) -> str:
        text = feedback.strip()
        if not text:
            raise ValidationError("Feedback must not be empty.")
        validate_task_id(task_id)
        self.repository.add_task_event(task_id, event_type=FEEDBACK_EVENT, details={"feedback": text})
        return "feedback saved"

    def submit(self, task_id: str, feedback: str, *, reject: bool = False) -> str:
        """Single submit: save feedback, then reject when asked."""

        text = feedback.strip()
        if reject:
            if not text:
                raise ValidationError("Feedback is required to reject a task.")
            self.orchestrator.reject_task(task_id, text)
            return f"rejected {task_id}"
        return self.add_feedback(task_id, text)

    def reject(self, task_id: str) -> str:
        """Reject with feedback captured since the task last entered review."""

        captured = self._captured_feedback(task_id)
        if captured is None:
            raise ValidationError(f"Capture feedback before rejecting {task_id}.")
        self.orchestrator.reject_task(task_id, captured, feedback_recorded=True)
        return f"rejected {task_id}"

    def accept_override(self, task_id: str) -> str:
        validate_task_id(task_id)
        self.repository.acknowledge_override(task_id, actor="operator")
        logger.info("Scope override acknowledged for %s", task_id)
        return "scope override acknowledged"

    def explain(self, task_id: str, text: str) -> str:
        explanation = text.strip()
        if not explanation:
            raise ValidationError("Explanation must not be empty.")
        validate_task_id(task_id)
        self.repository.add_task_event(
            task_id,
            event_type=EXPLANATION_EVENT,
            details={"text": explanation},
        )
        return "explanation saved"

    def update_user_story(self, task_id: str, text: str) -> str:
        """Store new story text and re-baseline the drift hash."""

        story = text.strip()
        if not story:
            raise ValidationError("User story must not be empty.")
        self.repository.update_user_story(task_id, story)
        if self.loader.stories_dir is not None:
            story_file = safe_join(self.loader.stories_dir, f"{validate_task_id(task_id)}.md")
            story_file.parent.mkdir(parents=True, exist_ok=True)
            story_file.write_text(story, "utf-8")
        return "user story updated"

    def revert_file(self, detail: ReviewDetail, path: str | None = None) -> str:
        """Restore one file from base on the task branch and commit."""

        if not detail.files:
            return NO_FILES_TO_REVERT
        target = path or self._default_revert_target(detail)
        if target not in {item.path for item in detail.files}:
            raise ValidationError(f"File is not part of the review diff: {target}")

        task = self.repository.get_task(detail.task_id)
        workdir = Path(task.worktree_path) if task.worktree_path else None
        if workdir is not None and not workdir.exists():
            workdir = None
        self.orchestrator.git.revert_file(
            target,
            base=detail.base_branch,
            branch=detail.task_branch,
            workdir=workdir,
        )
        self.repository.add_task_event(
            detail.task_id,
            event_type="file_reverted",
            details={"path": target, "base": detail.base_branch},
        )
        return f"reverted {target}"

    def approve(self, task_id: str, *, branch: str | None = None) -> TaskView:
        """Approve unless changes are out of scope without an override or explanation."""

        validate_task_id(task_id)
        task = self.repository.get_task(task_id)
        if task.status is not TaskStatus.REVIEW:
            raise NotInReviewError(task_id, task.status)
        detail = self.loader.load(task_id)
        if detail.alignment is Alignment.OUT and not (
            detail.override_acknowledged or detail.explanations
        ):
            raise ScopeOverrideRequiredError(
                task_id,
                out_of_scope_files(task.scope_paths, detail.files),
            )
        return self.orchestrator.approve_task(task_id, branch=branch or detail.task_branch)

    def _captured_feedback(self, task_id: str) -> str | None:
        captured: str | None = None
        for event in self.repository.list_events(task_id):
            if event.status_to is TaskStatus.REVIEW:
                captured = None
            elif event.event_type == FEEDBACK_EVENT:
                captured = str(event.details.get("feedback", "")) or None
        return captured

    def _default_revert_target(self, detail: ReviewDetail) -> str:
        task = self.repository.get_task(detail.task_id)
        outside = out_of_scope_files(task.scope_paths, detail.files) if task.scope_paths else []
        return outside[0] if outside else detail.files[0].path

    @staticmethod
    def describe(detail: ReviewDetail) -> list[str]:
        lines = [
            f"Task: {detail.task_id} {detail.title}",
            f"Branch: {detail.task_branch} -> {detail.base_branch}",
            f"Alignment: {detail.alignment.value}"
            + (" (override acknowledged)" if detail.override_acknowledged else ""),
            f"Story drift: {detail.story_drift.value}",
            detail.tests_summary,
            f"Files: {len(detail.files)}",
        ]
        lines.extend(f"  {item.path} +{item.added} -{item.deleted}" for item in detail.files)
        if detail.acceptance_criteria:
            lines.append("Acceptance criteria:")
            lines.extend(f"  - {item}" for item in detail.acceptance_criteria)
        lines.extend(f"Explanation: {text}" for text in detail.explanations)
        return lines
