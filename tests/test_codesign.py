"""Tests for signing identities and the codesign wrapper.

This module tests:
- Developer ID validation (validate_developer_id)
- Identity references (SigningIdentity)
- Parsing of existing signatures (SignatureInfo)
- codesign / security command lines (CodesignTool)
"""

import plistlib
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from macnotary import (
    ADHOC_IDENTITY,
    ArtifactKind,
    CodesignTool,
    ConfigurationError,
    SignatureInfo,
    SigningIdentity,
    ValidationError,
    validate_developer_id,
)

AUTHORITY = "Developer ID Application: John Doe (ABCDE12345)"
CERT_HASH = "0123456789ABCDEF0123456789ABCDEF01234567"

DISPLAY_OUTPUT = f"""\
Executable=/tmp/dist/exec_a
Identifier=exec_a
Format=Mach-O thin (arm64)
CodeDirectory v=20500 size=1234 flags=0x10000(runtime) hashes=28+7 location=embedded
Signature size=9049
Authority={AUTHORITY}
Authority=Developer ID Certification Authority
Authority=Apple Root CA
Timestamp=Oct 18, 2026 at 10:00:00
TeamIdentifier=ABCDE12345
"""

UNTIMESTAMPED_DISPLAY_OUTPUT = f"""\
Executable=/tmp/dist/exec_a
Identifier=exec_a
Format=Mach-O thin (arm64)
CodeDirectory v=20500 size=1234 flags=0x10000(runtime) hashes=28+7 location=embedded
Signature size=9049
Authority={AUTHORITY}
Authority=Developer ID Certification Authority
Authority=Apple Root CA
Signed Time=Oct 18, 2026 at 10:00:00
TeamIdentifier=ABCDE12345
"""

JIT_ENTITLEMENTS = {"com.apple.security.cs.allow-jit": True}

ADHOC_DISPLAY_OUTPUT = """\
Executable=/tmp/dist/exec_a
Identifier=exec_a
CodeDirectory v=20400 size=1234 flags=0x20002(adhoc,linker-signed) hashes=28+0 location=embedded
Signature=adhoc
TeamIdentifier=not set
"""


class TestValidateDeveloperId:
    """Tests for validate_developer_id function."""

    def test_validate_empty_dev_id(self) -> None:
        """Test validation fails for empty Developer ID."""
        with pytest.raises(ValidationError, match="cannot be empty"):
            validate_developer_id("")

    def test_validate_whitespace_dev_id(self) -> None:
        """Test validation fails for whitespace-only Developer ID."""
        with pytest.raises(ValidationError, match="cannot be empty"):
            validate_developer_id("   ")

    def test_validate_long_dev_id(self) -> None:
        """Test validation fails for overly long Developer ID."""
        with pytest.raises(ValidationError, match="too long"):
            validate_developer_id("A" * 101)

    def test_validate_valid_name_with_team_id(self) -> None:
        """Test validation passes for name with Team ID."""
        validate_developer_id("John Doe (ABCDE12345)")

    def test_validate_invalid_team_id_length(self) -> None:
        """Test validation fails for a Team ID that is not 10 characters."""
        with pytest.raises(ValidationError, match="invalid format"):
            validate_developer_id("John Doe (ABC123)")

    def test_validate_invalid_start_char(self) -> None:
        """Test validation fails for names starting with a digit."""
        with pytest.raises(ValidationError, match="invalid format"):
            validate_developer_id("123 Company")


class TestSigningIdentity:
    """Tests for SigningIdentity.from_reference()."""

    def test_name_expanded_to_authority(self) -> None:
        """Test that a bare name becomes a Developer ID Application name."""
        identity = SigningIdentity.from_reference("John Doe (ABCDE12345)")
        assert identity.reference == AUTHORITY
        assert identity.authority == AUTHORITY
        assert not identity.adhoc

    def test_full_authority_kept(self) -> None:
        """Test that a full authority is used as given."""
        identity = SigningIdentity.from_reference(AUTHORITY)
        assert identity.reference == AUTHORITY

    def test_certificate_hash(self) -> None:
        """Test that a certificate hash is kept for later resolution."""
        identity = SigningIdentity.from_reference(CERT_HASH.lower())
        assert identity.reference == CERT_HASH
        assert identity.authority is None

    @pytest.mark.parametrize("reference", ["-", "", "  "])
    def test_adhoc(self, reference: str) -> None:
        """Test the ad-hoc spellings."""
        identity = SigningIdentity.from_reference(reference)
        assert identity.reference == ADHOC_IDENTITY
        assert identity.adhoc

    def test_env_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that DEV_ID is used when no reference is given."""
        monkeypatch.setenv("DEV_ID", "Jane Roe")
        identity = SigningIdentity.from_reference()
        assert identity.reference == "Developer ID Application: Jane Roe"

    def test_invalid_name(self) -> None:
        """Test that malformed names are rejected."""
        with pytest.raises(ValidationError):
            SigningIdentity.from_reference("!!invalid!!")

    def test_missing_entitlements(self, tmp_path: Path) -> None:
        """Test that a missing entitlements file is a configuration error."""
        with pytest.raises(ConfigurationError, match="Entitlements"):
            SigningIdentity.from_reference(
                "-", entitlements=tmp_path / "missing.plist"
            )


class TestSignatureInfo:
    """Tests for SignatureInfo.parse() and SigningIdentity.matches()."""

    def test_parse_developer_id(self) -> None:
        """Test parsing a Developer ID signature."""
        info = SignatureInfo.parse(DISPLAY_OUTPUT)
        assert info.authority == AUTHORITY
        assert info.team_id == "ABCDE12345"
        assert info.runtime
        assert not info.adhoc

    def test_parse_adhoc(self) -> None:
        """Test parsing an ad-hoc (linker) signature."""
        info = SignatureInfo.parse(ADHOC_DISPLAY_OUTPUT)
        assert info.adhoc
        assert info.team_id is None
        assert not info.runtime

    def test_matches_same_identity(self) -> None:
        """Test that a signature by the same identity matches."""
        identity = SigningIdentity.from_reference(AUTHORITY)
        assert identity.matches(SignatureInfo.parse(DISPLAY_OUTPUT))

    def test_other_identity_does_not_match(self) -> None:
        """Test that another identity's signature does not match."""
        identity = SigningIdentity.from_reference("Jane Roe (ZYXWV98765)")
        assert not identity.matches(SignatureInfo.parse(DISPLAY_OUTPUT))

    def test_missing_runtime_does_not_match(self) -> None:
        """Test that a signature without hardened runtime is redone."""
        identity = SigningIdentity.from_reference(AUTHORITY)
        info = SignatureInfo(AUTHORITY, "ABCDE12345", False, False)
        assert not identity.matches(info)

    def test_linker_signature_not_adopted(self) -> None:
        """Test that a linker ad-hoc signature is replaced."""
        identity = SigningIdentity.from_reference(AUTHORITY)
        assert not identity.matches(SignatureInfo.parse(ADHOC_DISPLAY_OUTPUT))

    def test_unsigned_does_not_match(self) -> None:
        """Test that no signature never matches."""
        assert not SigningIdentity.from_reference("-").matches(None)

    def test_parse_timestamp(self) -> None:
        """Test that only a Timestamp= line counts as a secure timestamp."""
        assert SignatureInfo.parse(DISPLAY_OUTPUT).timestamp
        assert not SignatureInfo.parse(UNTIMESTAMPED_DISPLAY_OUTPUT).timestamp

    def test_missing_timestamp_does_not_match(self) -> None:
        """Test that a signature made without a timestamp is redone."""
        identity = SigningIdentity.from_reference(AUTHORITY, timestamp=True)
        info = SignatureInfo.parse(UNTIMESTAMPED_DISPLAY_OUTPUT)
        assert not identity.matches(info, ArtifactKind.EXECUTABLE)

    def test_timestamp_not_required_when_disabled(self) -> None:
        """Test that --no-timestamp runs accept untimestamped signatures."""
        identity = SigningIdentity.from_reference(AUTHORITY, timestamp=False)
        info = SignatureInfo.parse(UNTIMESTAMPED_DISPLAY_OUTPUT)
        assert identity.matches(info, ArtifactKind.EXECUTABLE)

    def test_entitlements_compared(self, tmp_path: Path) -> None:
        """Test that executables must carry the configured entitlements."""
        entitlements = tmp_path / "entitlements.plist"
        entitlements.write_bytes(plistlib.dumps(JIT_ENTITLEMENTS))
        identity = SigningIdentity.from_reference(
            AUTHORITY, entitlements=entitlements
        )
        without = SignatureInfo.parse(DISPLAY_OUTPUT)
        with_jit = SignatureInfo.parse(DISPLAY_OUTPUT, dict(JIT_ENTITLEMENTS))
        assert not identity.matches(without, ArtifactKind.EXECUTABLE)
        assert not identity.matches(without, ArtifactKind.BUNDLE)
        assert identity.matches(with_jit, ArtifactKind.EXECUTABLE)

    def test_stale_entitlements_do_not_match(self) -> None:
        """Test that entitlements no longer configured are removed."""
        identity = SigningIdentity.from_reference(AUTHORITY)
        info = SignatureInfo.parse(DISPLAY_OUTPUT, dict(JIT_ENTITLEMENTS))
        assert not identity.matches(info, ArtifactKind.EXECUTABLE)

    def test_libraries_ignore_entitlements(self, tmp_path: Path) -> None:
        """Test that libraries match regardless of entitlements."""
        entitlements = tmp_path / "entitlements.plist"
        entitlements.write_bytes(plistlib.dumps(JIT_ENTITLEMENTS))
        identity = SigningIdentity.from_reference(
            AUTHORITY, entitlements=entitlements
        )
        info = SignatureInfo.parse(DISPLAY_OUTPUT)
        assert identity.matches(info, ArtifactKind.DYNAMIC_LIBRARY)

    def test_unreadable_entitlements(self, tmp_path: Path) -> None:
        """Test that a malformed entitlements file is a configuration error."""
        entitlements = tmp_path / "entitlements.plist"
        entitlements.write_text("not a plist")
        identity = SigningIdentity.from_reference(
            AUTHORITY, entitlements=entitlements
        )
        with pytest.raises(ConfigurationError, match="could not be read"):
            identity.load_entitlements()


@pytest.fixture
def mock_run():
    """Patch subprocess.run with a successful result."""
    with patch("subprocess.run") as mock:
        mock.return_value = MagicMock(returncode=0, stdout="", stderr="")
        yield mock


class TestCodesignTool:
    """Tests for the codesign command lines."""

    def test_sign_executable(self, mock_run, tmp_path: Path) -> None:
        """Test hardened runtime, timestamp and entitlements on executables."""
        entitlements = tmp_path / "entitlements.plist"
        entitlements.write_text("<plist/>")
        identity = SigningIdentity.from_reference(
            AUTHORITY, entitlements=entitlements
        )
        CodesignTool().sign(tmp_path / "exec_a", identity, ArtifactKind.EXECUTABLE)
        cmd = mock_run.call_args[0][0]
        assert cmd[:4] == ["codesign", "--sign", AUTHORITY, "--force"]
        assert "--timestamp" in cmd
        assert cmd[cmd.index("--options") + 1] == "runtime"
        assert cmd[cmd.index("--entitlements") + 1] == str(entitlements)
        assert cmd[-1] == str(tmp_path / "exec_a")

    def test_no_entitlements_on_libraries(self, mock_run, tmp_path: Path) -> None:
        """Test that libraries never get entitlements."""
        entitlements = tmp_path / "entitlements.plist"
        entitlements.write_text("<plist/>")
        identity = SigningIdentity.from_reference(
            AUTHORITY, entitlements=entitlements
        )
        CodesignTool().sign(
            tmp_path / "libfoo.dylib", identity, ArtifactKind.DYNAMIC_LIBRARY
        )
        cmd = mock_run.call_args[0][0]
        assert "--entitlements" not in cmd
        assert "--options" in cmd

    def test_adhoc_has_no_timestamp(self, mock_run, tmp_path: Path) -> None:
        """Test that ad-hoc signing never asks for a timestamp."""
        identity = SigningIdentity.from_reference("-")
        CodesignTool().sign(tmp_path / "exec_a", identity, ArtifactKind.EXECUTABLE)
        cmd = mock_run.call_args[0][0]
        assert "--timestamp=none" in cmd
        assert "--timestamp" not in cmd

    def test_container_has_no_runtime(self, mock_run, tmp_path: Path) -> None:
        """Test that disk images are signed without runtime options."""
        identity = SigningIdentity.from_reference(AUTHORITY)
        CodesignTool().sign(tmp_path / "dist.dmg", identity)
        cmd = mock_run.call_args[0][0]
        assert "--options" not in cmd

    def test_keychain_passed(self, mock_run, tmp_path: Path) -> None:
        """Test that a dedicated keychain is passed to codesign."""
        keychain = tmp_path / "signing.keychain-db"
        identity = SigningIdentity.from_reference(AUTHORITY)
        CodesignTool(keychain).sign(tmp_path / "exec_a", identity)
        cmd = mock_run.call_args[0][0]
        assert cmd[cmd.index("--keychain") + 1] == str(keychain)

    def test_verify_ok(self, mock_run, tmp_path: Path) -> None:
        """Test that a clean verification returns None."""
        assert CodesignTool().verify(tmp_path / "exec_a") is None
        cmd = mock_run.call_args[0][0]
        assert cmd[:3] == ["codesign", "--verify", "--strict"]

    def test_verify_failure(self, mock_run, tmp_path: Path) -> None:
        """Test that verification failures return codesign's diagnostic."""
        mock_run.side_effect = subprocess.CalledProcessError(
            1, "codesign", stderr="exec_a: invalid signature"
        )
        assert CodesignTool().verify(tmp_path / "exec_a") == (
            "exec_a: invalid signature"
        )

    def test_inspect_reads_stderr(self, mock_run, tmp_path: Path) -> None:
        """Test that codesign --display output on stderr is parsed."""
        mock_run.return_value = MagicMock(
            returncode=0, stdout="", stderr=DISPLAY_OUTPUT
        )
        info = CodesignTool().inspect(tmp_path / "exec_a")
        assert info is not None
        assert info.authority == AUTHORITY

    def test_inspect_reads_entitlements(self, mock_run, tmp_path: Path) -> None:
        """Test that embedded entitlements are read as an XML plist."""
        mock_run.side_effect = [
            MagicMock(returncode=0, stdout="", stderr=UNTIMESTAMPED_DISPLAY_OUTPUT),
            MagicMock(
                returncode=0,
                stdout=plistlib.dumps(JIT_ENTITLEMENTS).decode(),
                stderr="",
            ),
        ]
        info = CodesignTool().inspect(tmp_path / "exec_a")
        assert info is not None
        assert info.entitlements == JIT_ENTITLEMENTS
        assert not info.timestamp
        cmd = mock_run.call_args[0][0]
        assert cmd[:4] == ["codesign", "--display", "--entitlements", "-"]
        assert "--xml" in cmd

    def test_inspect_unsigned(self, mock_run, tmp_path: Path) -> None:
        """Test that unsigned code inspects as None."""
        mock_run.side_effect = subprocess.CalledProcessError(
            1, "codesign", stderr="code object is not signed at all"
        )
        assert CodesignTool().inspect(tmp_path / "exec_a") is None

    def test_resolve_hash(self, mock_run) -> None:
        """Test that a certificate hash is resolved to its common name."""
        mock_run.return_value = MagicMock(
            returncode=0,
            stdout=(
                f'  1) {CERT_HASH} "{AUTHORITY}"\n'
                "     1 valid identities found\n"
            ),
            stderr="",
        )
        identity = SigningIdentity.from_reference(CERT_HASH)
        resolved = CodesignTool().resolve(identity)
        assert resolved.authority == AUTHORITY
        assert resolved.reference == CERT_HASH

    def test_resolve_unknown_hash(self, mock_run) -> None:
        """Test that an unknown hash is a configuration error."""
        mock_run.return_value = MagicMock(
            returncode=0, stdout="     0 valid identities found\n", stderr=""
        )
        identity = SigningIdentity.from_reference(CERT_HASH)
        with pytest.raises(ConfigurationError, match="not found"):
            CodesignTool().resolve(identity)

    def test_resolve_name_skips_lookup(self, mock_run) -> None:
        """Test that named identities need no lookup."""
        identity = SigningIdentity.from_reference(AUTHORITY)
        assert CodesignTool().resolve(identity) is identity
        mock_run.assert_not_called()
