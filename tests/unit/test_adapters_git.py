"""Unit tests for adapters/git.py against temporary repositories."""

from pathlib import Path

import git
import pytest

from repo_atomic.adapters.git import GitRepository, VersionControlOperations
from repo_atomic.engine.snapshot import SnapshotCapturer
from repo_atomic.enums import OperationKind
from repo_atomic.exceptions import GitOperationError

pytestmark = pytest.mark.git


@pytest.fixture
def repo(git_repo: Path) -> GitRepository:
    return GitRepository(git_repo)


class TestGitRepository:
    """Tests for GitRepository primitives."""

    def test_not_a_repository(self, tmp_path: Path):
        """Test opening a plain directory raises GitOperationError."""
        plain = tmp_path / "plain"
        plain.mkdir()
        with pytest.raises(GitOperationError, match="Not a git repository"):
            GitRepository(plain).head_sha()

    def test_inspection(self, repo: GitRepository, git_repo: Path):
        """Test reference and status probes."""
        assert repo.current_reference() == "main"
        assert repo.status_summary() == []

        (git_repo / "new.txt").write_text("x")
        assert repo.status_summary() == ["?? new.txt"]

    def test_branch_lifecycle(self, repo: GitRepository):
        """Test create, switch and delete of a branch."""
        repo.create_branch("fix/1", start_point="main")
        assert repo.branch_exists("fix/1")
        assert repo.is_checked_out("fix/1")

        repo.switch_branch("main")
        repo.delete_branch("fix/1")
        assert not repo.branch_exists("fix/1")

    def test_delete_absent_branch_is_noop(self, repo: GitRepository):
        """Test deleting a missing branch does nothing."""
        repo.delete_branch("never-existed")

    def test_create_existing_branch_fails(self, repo: GitRepository):
        """Test git errors are wrapped."""
        with pytest.raises(GitOperationError, match="git checkout failed"):
            repo.create_branch("main")

    def test_commit_all(self, repo: GitRepository, git_repo: Path):
        """Test committing every change moves HEAD."""
        before = repo.head_sha()
        (git_repo / "CHANGELOG.md").write_text("- fix\n")

        sha = repo.commit_all("Add changelog")

        assert sha == repo.head_sha() != before
        assert repo.status_summary() == []

    def test_commit_clean_tree(self, repo: GitRepository):
        """Test a clean tree cannot be committed."""
        with pytest.raises(GitOperationError, match="Nothing to commit"):
            repo.commit_all("empty")

    def test_reset_to(self, repo: GitRepository, git_repo: Path):
        """Test a hard reset restores the earlier head."""
        before = repo.head_sha()
        (git_repo / "a.txt").write_text("a")
        repo.commit_all("a")

        repo.reset_to(before)

        assert repo.head_sha() == before
        assert not (git_repo / "a.txt").exists()

    def test_tags(self, repo: GitRepository):
        """Test annotated tag creation and tolerant deletion."""
        repo.create_tag("v1.0.0", "Release v1.0.0")
        assert repo.tag_exists("v1.0.0")

        repo.delete_tag("v1.0.0")
        repo.delete_tag("v1.0.0")
        assert not repo.tag_exists("v1.0.0")

    def test_push_and_delete_remote(self, repo: GitRepository, bare_remote: Path):
        """Test pushing and deleting a branch and a tag on the remote."""
        repo.create_branch("feature")
        repo.push("feature")
        assert repo.remote_branch_exists("feature")

        repo.create_tag("v0.1.0")
        repo.push_tag("v0.1.0")
        assert "v0.1.0" in {t.name for t in git.Repo(bare_remote).tags}

        repo.delete_remote_branch("feature")
        repo.delete_remote_branch("feature")
        repo.delete_remote_tag("v0.1.0")
        repo.delete_remote_tag("v0.1.0")

        assert not repo.remote_branch_exists("feature")
        assert "v0.1.0" not in {t.name for t in git.Repo(bare_remote).tags}

    def test_delete_absent_remote_tag_is_noop(self, repo: GitRepository, bare_remote: Path):
        """Test deleting a tag the remote never had does nothing."""
        repo.delete_remote_tag("v9.9.9")
        assert not repo.remote_tag_exists("v9.9.9")

    def test_push_without_remote(self, repo: GitRepository):
        """Test pushing to a missing remote raises GitOperationError."""
        with pytest.raises(GitOperationError):
            repo.push("main")

    def test_snapshot_source(self, repo: GitRepository, git_repo: Path):
        """Test the repository can feed a snapshot capturer."""
        (git_repo / "dirty.txt").write_text("x")
        snapshot = SnapshotCapturer(git_repo, source=repo, environ={}).capture()

        assert snapshot.current_reference == "main"
        assert snapshot.pending_changes == ("?? dirty.txt",)
        assert snapshot.is_complete


class TestVersionControlOperations:
    """Tests for VersionControlOperations."""

    def test_create_branch_operation(self, repo: GitRepository, capturer):
        """Test the branch operation's checks and inverse."""
        op = VersionControlOperations(repo).create_branch("fix/2", start_point="main")

        assert op.id == "create-branch-fix/2"
        assert op.kind == OperationKind.VERSION_CONTROL
        assert op.precheck().success
        assert op.execute(capturer).success
        assert op.validate().success
        assert not op.precheck().success

        assert op.rollback().success
        assert repo.current_reference() == "main"
        assert not repo.branch_exists("fix/2")

    def test_commit_inverse_resets(self, repo: GitRepository, git_repo: Path, capturer):
        """Test the commit inverse resets HEAD and keeps the changes."""
        before = repo.head_sha()
        (git_repo / "b.txt").write_text("b")
        op = VersionControlOperations(repo).commit_changes("Add b", depends_on="create-branch-x")

        assert op.dependencies == {"create-branch-x"}
        assert op.execute(capturer).success
        assert op.validate().success

        op.rollback()
        assert repo.head_sha() == before
        assert (git_repo / "b.txt").read_text() == "b"
        assert repo.status_summary() == ["?? b.txt"]

    def test_failed_commit_inverse_is_noop(self, repo: GitRepository, capturer):
        """Test rolling back a commit that never happened leaves HEAD alone."""
        before = repo.head_sha()
        op = VersionControlOperations(repo).commit_changes("nothing")

        assert not op.execute(capturer).success
        assert op.rollback().success
        assert repo.head_sha() == before

    def test_apply_changes_inverse_keeps_pending_edits(self, repo: GitRepository, git_repo: Path, capturer):
        """Test undoing applied changes restores edits made beforehand."""
        (git_repo / "README.md").write_text("# pending edit\n")
        (git_repo / "notes.txt").write_text("draft")

        def changes():
            (git_repo / "README.md").write_text("# generated\n")
            (git_repo / "src").mkdir()
            (git_repo / "src" / "new.py").write_text("x = 1\n")

        op = VersionControlOperations(repo).apply_changes(changes)
        assert op.kind == OperationKind.FILE_SYSTEM
        assert op.execute(capturer).success
        assert op.rollback().success

        assert (git_repo / "README.md").read_text() == "# pending edit\n"
        assert (git_repo / "notes.txt").read_text() == "draft"
        assert not (git_repo / "src" / "new.py").exists()

    def test_apply_changes_inverse_restores_tracked_file(self, repo: GitRepository, git_repo: Path, capturer):
        """Test a tracked file changed by the action returns to HEAD."""
        op = VersionControlOperations(repo).apply_changes(lambda: (git_repo / "README.md").unlink())
        op.execute(capturer)
        op.rollback()

        assert (git_repo / "README.md").read_text() == "# test\n"
        assert repo.status_summary() == []

    def test_tag_operation(self, repo: GitRepository, capturer):
        """Test the tag operation refuses an existing tag and deletes on rollback."""
        vcs = VersionControlOperations(repo)
        op = vcs.create_tag("v2.0.0", "Release")
        op.execute(capturer)
        assert repo.tag_exists("v2.0.0")
        assert not vcs.create_tag("v2.0.0").precheck().success

        op.rollback()
        assert not repo.tag_exists("v2.0.0")

    def test_switch_branch_operation(self, repo: GitRepository, capturer):
        """Test switching back to the original branch on rollback."""
        repo.create_branch("other", checkout=False)
        op = VersionControlOperations(repo).switch_branch("other")

        op.execute(capturer)
        assert repo.is_checked_out("other")
        op.rollback()
        assert repo.is_checked_out("main")

    def test_push_operations(self, repo: GitRepository, bare_remote: Path, capturer):
        """Test push inverses remove the branch from the remote."""
        vcs = VersionControlOperations(repo)
        repo.create_branch("release")
        op = vcs.push_branch("release")

        op.execute(capturer)
        assert repo.remote_branch_exists("release")
        op.rollback()
        assert not repo.remote_branch_exists("release")
