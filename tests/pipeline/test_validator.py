import hashlib

import pytest

from retrovault.config.platforms import PlatformDefinition, PlatformTable
from retrovault.pipeline.classifier import Classifier
from retrovault.pipeline.manifest import ManifestStore
from retrovault.pipeline.types import ManifestEntry
from retrovault.pipeline.validator import Validator


@pytest.fixture
def disc_settings(make_settings):
    """Settings with a disc platform that needs cue sheets and a BIOS."""
    table = PlatformTable([
        PlatformDefinition(id="nes", name="NES", extensions=[".nes"], header=b"NES\x1a", min_size=16),
        PlatformDefinition(
            id="psx",
            name="PlayStation",
            extensions=[".cue", ".bin", ".chd"],
            bios_files=["scph5501.bin"],
            companion_files={".bin": [".cue"]},
            chd=True,
        ),
        PlatformDefinition(
            id="gba",
            name="Game Boy Advance",
            extensions=[".gba"],
            naming_pattern=r"[A-Za-z0-9 ]+\.gba",
        ),
    ])
    return make_settings(platforms=table)


def build(settings):
    store = ManifestStore(settings.manifests_dir)
    return Validator(settings, store), Classifier(settings), store


@pytest.mark.unit
def test_generate_hash_is_deterministic(settings, make_nes):
    validator, classifier, _ = build(settings)
    path = make_nes()
    rom = classifier.classify(path).data

    first = validator.generate_hash(rom)
    second = validator.generate_hash(rom)

    assert first.success
    assert first.data == second.data == hashlib.sha256(path.read_bytes()).hexdigest()
    assert first.metadata["algorithm"] == "sha256"


@pytest.mark.unit
def test_check_duplicate_uses_manifest_index(settings):
    validator, _, store = build(settings)

    result = validator.check_duplicate("abc123", "nes")
    assert result.success and result.data is False

    store.append(ManifestEntry(
        id="rom-1", filename="a.nes", platform="nes", hash="abc123",
        size=1, extension=".nes", archived_at="2024-01-01T00:00:00+00:00",
    ))

    assert validator.check_duplicate("abc123", "nes").data is True
    assert validator.check_duplicate("abc123").data is True
    assert validator.check_duplicate("abc123", "snes").data is False


@pytest.mark.unit
def test_check_duplicate_requires_hash(settings):
    validator, _, _ = build(settings)

    result = validator.check_duplicate("")

    assert result.success is False
    assert "hash" in result.error


@pytest.mark.unit
def test_integrity_rejects_empty_and_headerless(settings, make_file, make_nes):
    validator, classifier, _ = build(settings)

    empty = classifier.classify(make_file("empty.nes", b"")).data
    result = validator.validate_integrity(empty)
    assert result.success is False
    assert "empty" in result.error

    headerless = classifier.classify(make_file("corrupt.nes", b"\xff" * 64)).data
    result = validator.validate_integrity(headerless)
    assert result.success is False
    assert "header" in result.error

    short = classifier.classify(make_file("short.nes", b"NES\x1a")).data
    assert "minimum" in validator.validate_integrity(short).error

    good = classifier.classify(make_nes()).data
    assert validator.validate_integrity(good).success


@pytest.mark.unit
def test_companion_cue_required_for_bin_tracks(disc_settings, make_file):
    validator, classifier, _ = build(disc_settings)

    track = make_file("Crash.bin", b"\x00" * 32)
    rom = classifier.classify(track).data
    assert rom.platform == "psx"

    result = validator.check_companion_files(rom)
    assert result.success is False
    assert "Crash.cue" in result.error
    assert result.metadata["missing"] == ["Crash.cue"]

    make_file("Crash.cue", b'FILE "Crash.bin" BINARY\n')
    result = validator.check_companion_files(rom)
    assert result.success
    assert result.data == [str(rom.path.parent / "Crash.cue")]


@pytest.mark.unit
def test_cue_sheet_references_must_exist(disc_settings, make_file):
    validator, classifier, _ = build(disc_settings)
    cue = make_file(
        "Game.cue",
        b'FILE "Game (Track 1).bin" BINARY\n  TRACK 01 MODE2/2352\n'
        b'FILE Game_2.bin BINARY\n  TRACK 02 AUDIO\n',
    )
    rom = classifier.classify(cue).data

    result = validator.check_companion_files(rom)
    assert result.success is False
    assert result.metadata["missing"] == ["Game (Track 1).bin", "Game_2.bin"]

    make_file("Game (Track 1).bin", b"\x00")
    make_file("Game_2.bin", b"\x00")
    result = validator.check_companion_files(rom)
    assert result.success
    assert len(result.data) == 2


@pytest.mark.unit
def test_companions_not_required_for_cartridges(settings, make_nes):
    validator, classifier, _ = build(settings)
    rom = classifier.classify(make_nes()).data

    result = validator.check_companion_files(rom)

    assert result.success
    assert result.data == []


@pytest.mark.unit
def test_missing_bios_requests_quarantine(disc_settings, make_file):
    validator, classifier, _ = build(disc_settings)
    rom = classifier.classify(make_file("Game.cue", b"")).data

    result = validator.validate_bios_dependencies(rom)

    assert result.success is False
    assert result.metadata["quarantine"] is True
    assert result.metadata["missingBios"] == ["scph5501.bin"]


@pytest.mark.unit
@pytest.mark.parametrize("location", ["scph5501.bin", "psx/scph5501.bin"])
def test_bios_found_in_archive(disc_settings, make_file, location):
    validator, classifier, _ = build(disc_settings)
    bios = disc_settings.bios_dir / location
    bios.parent.mkdir(parents=True, exist_ok=True)
    bios.write_bytes(b"\x00" * 16)
    rom = classifier.classify(make_file("Game.cue", b"")).data

    result = validator.validate_bios_dependencies(rom)

    assert result.success
    assert result.metadata["biosRequired"] is True


@pytest.mark.unit
def test_platform_without_bios_passes(settings, make_nes):
    validator, classifier, _ = build(settings)
    rom = classifier.classify(make_nes()).data

    result = validator.validate_bios_dependencies(rom)

    assert result.success
    assert result.metadata["biosRequired"] is False


@pytest.mark.unit
@pytest.mark.parametrize("filename,fragment", [
    ("", "filename"),
    ("   ", "filename"),
    ("..evil.nes", "traversal"),
    ("sub/dir.nes", "traversal"),
    ("bell\x07.nes", "control"),
])
def test_validate_naming_rejects_unsafe_names(settings, make_nes, filename, fragment):
    validator, classifier, _ = build(settings)
    rom = classifier.classify(make_nes()).data
    rom.filename = filename

    result = validator.validate_naming(rom)

    assert result.success is False
    assert fragment in result.error


@pytest.mark.unit
def test_validate_naming_applies_platform_pattern(disc_settings, make_file):
    validator, classifier, _ = build(disc_settings)

    ok = classifier.classify(make_file("Metroid Fusion.gba", b"\x00" * 4)).data
    assert validator.validate_naming(ok).success

    bad = classifier.classify(make_file("Metroid_Fusion!.gba", b"\x00" * 4)).data
    result = validator.validate_naming(bad)
    assert result.success is False
    assert "naming pattern" in result.error
