"""Tests for ticket stapling."""

from pathlib import Path

import pytest

from fakes import FakeNotaryService
from macnotary import (
    Artifact,
    ArtifactKind,
    NotarizationSubmission,
    StapleError,
    StapleStatus,
    Stapler,
    SubmissionArchive,
    SubmissionError,
    SubmissionStatus,
)

SUBMISSION_ID = "2efe2717-52ef-43a5-96dc-0797e4ca1041"

ARTIFACTS = [
    Artifact(
        Path("/t/dist/Outer.app/Contents/PlugIns/Inner.app"),
        ArtifactKind.BUNDLE,
        depth=1,
        parent=Path("/t/dist/Outer.app"),
    ),
    Artifact(Path("/t/dist/Outer.app"), ArtifactKind.BUNDLE),
    Artifact(Path("/t/dist/exec_a"), ArtifactKind.EXECUTABLE),
]


def accepted(fmt="dmg"):
    archive = SubmissionArchive(Path(f"/t/dist.{fmt}"), fmt, "0" * 64, ())
    submission = NotarizationSubmission(SUBMISSION_ID, archive)
    submission.status = SubmissionStatus.ACCEPTED
    return submission


class TestStaplerTargets:
    """Tests for Stapler.targets()."""

    def test_dmg_stapled_whole(self):
        """Test that a disk image is the single staple target."""
        submission = accepted("dmg")
        targets = Stapler(FakeNotaryService()).targets(
            submission.archive, ARTIFACTS
        )
        assert targets == [Path("/t/dist.dmg")]

    def test_zip_staples_bundles_nested_first(self):
        """Test that zip submissions staple every bundle, innermost first."""
        submission = accepted("zip")
        targets = Stapler(FakeNotaryService()).targets(
            submission.archive, ARTIFACTS
        )
        assert targets == [
            Path("/t/dist/Outer.app/Contents/PlugIns/Inner.app"),
            Path("/t/dist/Outer.app"),
        ]


class TestStaplerStaple:
    """Tests for Stapler.staple()."""

    def test_stapled(self):
        """Test a successful staple."""
        service = FakeNotaryService()
        result = Stapler(service).staple(accepted(), ARTIFACTS)
        assert result.status is StapleStatus.STAPLED
        assert result.targets == [Path("/t/dist.dmg")]
        assert service.tickets == [Path("/t/dist.dmg")]

    def test_nothing_to_staple(self):
        """Test that a zip of bare executables is skipped."""
        service = FakeNotaryService()
        result = Stapler(service).staple(accepted("zip"), ARTIFACTS[2:])
        assert result.status is StapleStatus.SKIPPED
        assert service.tickets == []

    def test_not_accepted(self):
        """Test that only accepted submissions are stapled."""
        submission = accepted()
        submission.status = SubmissionStatus.REJECTED
        service = FakeNotaryService()
        with pytest.raises(StapleError, match="Rejected") as exc:
            Stapler(service).staple(submission, ARTIFACTS)
        assert not exc.value.degraded
        assert service.tickets == []

    def test_ticket_unavailable(self):
        """Test that a failing ticket fetch is a degrading error."""
        service = FakeNotaryService(
            ticket_error=SubmissionError("CloudKit query failed", transient=True)
        )
        with pytest.raises(StapleError, match="CloudKit") as exc:
            Stapler(service).staple(accepted(), ARTIFACTS)
        assert exc.value.degraded
        assert exc.value.target == Path("/t/dist.dmg")
