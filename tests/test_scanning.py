import zipfile

import pytest
from pathlib import Path
from datetime import datetime

from photo_catalog import config
from photo_catalog.exceptions import ArchiveError
from photo_catalog.models import ArchiveImage, FilesystemImage, parse_location
from photo_catalog.scanning.archive import ArchiveReader
from photo_catalog.scanning.filesystem import DiskScanner, classify


def test_classify():
    assert classify(Path("/p/a.JPG")) == 'image'
    assert classify(Path("/p/set.zip")) == 'archive'
    assert classify(Path("/p/notes.txt")) is None
    assert classify(Path("/p/.hidden.png")) is None

def test_extension_map_covers_every_image_type():
    for ext in config.IMAGE_EXTS:
        assert config.EXT_TO_TYPE[ext] == 'image'

def test_iter_files_skips_hidden_and_respects_recursive(tmp_path):
    (tmp_path / "a.png").write_bytes(b"x")
    (tmp_path / ".cache").mkdir()
    (tmp_path / ".cache" / "b.png").write_bytes(b"x")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "c.png").write_bytes(b"x")

    scanner = DiskScanner()
    deep = list(scanner._iter_files(tmp_path))
    shallow = list(scanner._iter_files(tmp_path, recursive=False))

    assert tmp_path / "a.png" in deep
    assert tmp_path / "sub" / "c.png" in deep
    assert tmp_path / ".cache" / "b.png" not in deep
    assert shallow == [tmp_path / "a.png"]

def test_scan_yields_bare_records(tmp_path, make_image):
    make_image(tmp_path / "a.png")
    make_image(tmp_path / "nested" / "deeper" / "b.jpg")
    (tmp_path / "readme.txt").write_text("ignore me")

    records = DiskScanner().scan(tmp_path)

    paths = sorted(r.path for r in records)
    assert paths == [str(tmp_path / "a.png"), str(tmp_path / "nested" / "deeper" / "b.jpg")]
    for rec in records:
        assert rec.file_size > 0
        assert rec.captured_at is None
        assert rec.width is None
        assert not rec.is_archive

def test_scan_expands_archives(tmp_path, make_zip):
    make_zip(tmp_path / "set.zip", {'a.png': None, 'b.txt': b"text", 'sub/c.jpg': None})

    records = DiskScanner().scan(tmp_path)

    zip_str = str(tmp_path / "set.zip")
    assert sorted(r.path for r in records) == [f"{zip_str}::a.png", f"{zip_str}::sub/c.jpg"]
    assert all(r.is_archive and r.archive_path == zip_str for r in records)
    assert {r.filename for r in records} == {"a.png", "c.jpg"}

def test_scan_skips_broken_archive(tmp_path, make_image):
    (tmp_path / "broken.zip").write_bytes(b"PK not really")
    make_image(tmp_path / "ok.png")

    records = DiskScanner().scan(tmp_path)

    assert [r.filename for r in records] == ["ok.png"]

def test_archive_entry_filtering(tmp_path, make_zip):
    zip_path = make_zip(tmp_path / "set.zip", {
        'a.png': None,
        'folder/': b"",
        '__MACOSX/._a.png': b"junk",
        'sub/._b.png': b"junk",
        'sub/b.PNG': None,
        'notes.md': b"# hi",
    })

    names = [info.filename for info in ArchiveReader().list_image_entries(zip_path)]

    assert names == ['a.png', 'sub/b.PNG']

def test_archive_read_entry(tmp_path, make_zip):
    zip_path = make_zip(tmp_path / "set.zip", {'a.png': b"payload"})
    reader = ArchiveReader()
    assert reader.read_entry(zip_path, 'a.png') == b"payload"
    with pytest.raises(ArchiveError):
        reader.read_entry(zip_path, 'missing.png')

def test_archive_errors(tmp_path):
    bad = tmp_path / "bad.zip"
    bad.write_bytes(b"nope")
    with pytest.raises(ArchiveError):
        ArchiveReader().list_image_entries(bad)
    with pytest.raises(ArchiveError):
        ArchiveReader().list_image_entries(tmp_path / "absent.zip")

def test_read_bytes_for_both_locations(tmp_path, make_zip):
    (tmp_path / "a.png").write_bytes(b"on disk")
    zip_path = make_zip(tmp_path / "set.zip", {'x/y.png': b"in zip"})

    scanner = DiskScanner()
    assert scanner.read_bytes(FilesystemImage(str(tmp_path / "a.png"))) == b"on disk"
    assert scanner.read_bytes(ArchiveImage(str(zip_path), 'x/y.png')) == b"in zip"

def test_archive_entry_falls_back_to_archive_time(tmp_path, make_zip):
    zip_path = make_zip(tmp_path / "set.zip", {'a.png': b"x"})
    when = DiskScanner().source_birth_time(ArchiveImage(str(zip_path), 'a.png'))
    assert isinstance(when, datetime)
    assert abs((datetime.now() - when).total_seconds()) < 3600


# --- Path keys ---

def test_archive_key_round_trip():
    loc = ArchiveImage("/photos/set.zip", "sub/c.png")
    assert loc.to_key() == "/photos/set.zip::sub/c.png"
    assert parse_location(loc.to_key()) == loc

def test_key_splits_on_first_separator_only():
    loc = parse_location("/photos/set.zip::odd::name.png")
    assert loc == ArchiveImage("/photos/set.zip", "odd::name.png")
    assert loc.filename == "odd::name.png"

def test_plain_path_key():
    assert parse_location("/photos/a.png") == FilesystemImage("/photos/a.png")
    assert parse_location("/photos/trailing::") == FilesystemImage("/photos/trailing::")
