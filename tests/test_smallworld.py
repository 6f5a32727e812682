from __future__ import annotations

import io
import logging

import pytest

import smallworld
from opening_title_merge import ConflictStrategy, FileDataConflictError, FilenameAlreadyExistsError
from opening_title_regions import DEFAULT_ORDER, Region, Role, filename_for
from smallworld import FileAccessError, convert_opening_title, run_file_conversion
from u8_archive import U8File, U8Folder, read_tree
from u8_builders import EMPTY_ARCHIVE, build_archive, opening_title_tree, padded, role_files

TAIWAN_PAYLOAD = padded(
    b"INPBRLAN", b"INTBRLAN", b"LPPBRLAN", b"OTPBRLAN", b"SMTHELSE", b"THEBRLYT"
)


def taiwan_tree(region: Region = Region.W) -> U8Folder:
    root = opening_title_tree([region], role_files(0x00, 0x20, 0x40, 0x60, 0xA0))
    root.get("/arc/anim").insert("something else", U8File(0x80, 8))
    return root


def convert(source: io.BytesIO, from_regions, to_regions, **kwargs) -> io.BytesIO:
    sink = io.BytesIO()
    convert_opening_title(source, sink, from_regions, to_regions, **kwargs)
    sink.seek(0)
    return sink


def file_data(archive: io.BytesIO, path: str) -> bytes:
    root, payload_start = read_tree(archive)
    node = root.get(path)
    assert isinstance(node, U8File)
    data = archive.getvalue()
    return data[payload_start + node.offset:payload_start + node.offset + node.size]


class TestConvert:
    def test_individual_region(self):
        source = build_archive(taiwan_tree(), TAIWAN_PAYLOAD)
        out = convert(source, None, [Region.J])

        root, payload_start = read_tree(out)
        assert root == taiwan_tree(Region.J)
        assert payload_start == 0x160
        assert out.getvalue()[payload_start:] == TAIWAN_PAYLOAD[:0xA8]

    def test_region_free(self):
        in_root = U8Folder(
            {
                "arc": U8Folder(
                    {
                        "anim": U8Folder(
                            {
                                filename_for(Region.P, Role.IN_PRESS): U8File(0x00, 8),
                                filename_for(Region.E, Role.IN_TITLE): U8File(0x20, 8),
                                filename_for(Region.J, Role.LOOP_PRESS): U8File(0x40, 8),
                                filename_for(Region.K, Role.OUT_PRESS): U8File(0x60, 8),
                            }
                        ),
                        "blyt": U8Folder({filename_for(Region.W, Role.LAYOUT): U8File(0x80, 8)}),
                    }
                )
            }
        )
        source = build_archive(
            in_root, padded(b"INPBRLAN", b"INTBRLAN", b"LPPBRLAN", b"OTPBRLAN", b"THEBRLYT")
        )
        out = convert(source, None, DEFAULT_ORDER)

        root, payload_start = read_tree(out)
        assert payload_start == 0x580
        for region in DEFAULT_ORDER:
            for role in Role:
                assert root.get(f"{role.folder_path}/{filename_for(region, role)}") is not None
        assert file_data(out, f"/arc/anim/{filename_for(Region.C, Role.IN_TITLE)}") == b"INTBRLAN"
        assert file_data(out, f"/arc/blyt/{filename_for(Region.P, Role.LAYOUT)}") == b"THEBRLYT"
        # each role's data is stored once and shared by all six names
        assert len(out.getvalue()) == payload_start + 4 * 0x20 + 8

    def test_conversion_is_idempotent(self):
        first = convert(build_archive(taiwan_tree(), TAIWAN_PAYLOAD), None, DEFAULT_ORDER)
        second = convert(io.BytesIO(first.getvalue()), None, DEFAULT_ORDER)
        assert first.getvalue() == second.getvalue()

    def test_writes_after_existing_sink_position(self):
        source = build_archive(taiwan_tree(), TAIWAN_PAYLOAD)
        expected = convert(source, None, [Region.J]).getvalue()

        sink = io.BytesIO(b"\xff" * 5)
        sink.seek(5)
        convert_opening_title(
            build_archive(taiwan_tree(), TAIWAN_PAYLOAD), sink, None, [Region.J]
        )
        assert sink.getvalue() == b"\xff" * 5 + expected

    def test_repeated_regions_are_ignored(self):
        source = taiwan_tree()
        once = convert(build_archive(source, TAIWAN_PAYLOAD), [Region.W], [Region.J])
        twice = convert(
            build_archive(taiwan_tree(), TAIWAN_PAYLOAD), [Region.W, Region.W], [Region.J, Region.J]
        )
        assert once.getvalue() == twice.getvalue()

    def test_no_target_regions(self):
        with pytest.raises(ValueError):
            convert(build_archive(taiwan_tree(), TAIWAN_PAYLOAD), None, [])

    def test_logs_every_step(self, caplog):
        with caplog.at_level(logging.INFO, logger="smallworld"):
            convert(build_archive(taiwan_tree(), TAIWAN_PAYLOAD), None, [Region.J])
        for step in range(1, 10):
            assert f"[{step}/9]" in caplog.text
        assert "Done switching regions!" in caplog.text


def conflicting_archive() -> io.BytesIO:
    """J and W copies of every role, with different layout data."""
    root = opening_title_tree([Region.J], role_files(0x00, 0x20, 0x40, 0x60, 0x80))
    for role, node in role_files(0x00, 0x20, 0x40, 0x60, 0xA0).items():
        root.get(role.folder_path).insert(filename_for(Region.W, role), node)
    payload = padded(b"INPBRLAN", b"INTBRLAN", b"LPPBRLAN", b"OTPBRLAN", b"JPNBRLYT", b"TWNBRLYT")
    return build_archive(root, payload)


class TestConflicts:
    def test_content_conflict_fails(self):
        with pytest.raises(FileDataConflictError, match="openingTitle_13.brlyt"):
            convert(conflicting_archive(), None, [Region.K])

    def test_content_conflict_overwrite_uses_first_region(self):
        out = convert(
            conflicting_archive(), None, [Region.K], content_strategy=ConflictStrategy.OVERWRITE
        )
        assert file_data(out, "/arc/blyt/openingTitle_KR_00.brlyt") == b"JPNBRLYT"

        out = convert(
            conflicting_archive(),
            [Region.W, Region.J],
            [Region.K],
            content_strategy=ConflictStrategy.OVERWRITE,
        )
        assert file_data(out, "/arc/blyt/openingTitle_KR_00.brlyt") == b"TWNBRLYT"

    def test_unselected_region_is_not_compared(self):
        out = convert(conflicting_archive(), [Region.W], [Region.K, Region.W])
        root, _ = read_tree(out)
        # J's files were not touched
        assert root.get("/arc/blyt/openingTitle_13.brlyt") is not None
        assert file_data(out, "/arc/blyt/openingTitle_KR_00.brlyt") == b"TWNBRLYT"

    def test_filename_conflict_fails(self):
        with pytest.raises(FilenameAlreadyExistsError):
            convert(conflicting_archive(), [Region.W], [Region.J])

    def test_filename_conflict_overwrite(self):
        out = convert(
            conflicting_archive(),
            [Region.W],
            [Region.J],
            filename_strategy=ConflictStrategy.OVERWRITE,
        )
        assert file_data(out, "/arc/blyt/openingTitle_13.brlyt") == b"TWNBRLYT"
        root, _ = read_tree(out)
        assert len(root.get("/arc/blyt")) == 1


class TestRunFileConversion:
    @staticmethod
    def upper(in_file, out_file):
        out_file.write(in_file.read().upper())

    def test_separate_files(self, tmp_path):
        src = tmp_path / "in.bin"
        dst = tmp_path / "out.bin"
        src.write_bytes(b"abc")
        run_file_conversion(src, dst, self.upper)
        assert dst.read_bytes() == b"ABC"
        assert src.read_bytes() == b"abc"

    def test_in_place(self, tmp_path):
        src = tmp_path / "in.bin"
        src.write_bytes(b"abc" * 100)
        run_file_conversion(src, src, self.upper)
        assert src.read_bytes() == b"ABC" * 100

    def test_missing_input(self, tmp_path):
        with pytest.raises(FileAccessError, match="couldn't open input file"):
            run_file_conversion(tmp_path / "nope", tmp_path / "out", self.upper)

    def test_unwritable_output(self, tmp_path):
        src = tmp_path / "in.bin"
        src.write_bytes(b"abc")
        with pytest.raises(FileAccessError, match="couldn't open output file"):
            run_file_conversion(src, tmp_path / "missing" / "out.bin", self.upper)


class TestCli:
    def test_missing_file(self, tmp_path, capsys):
        assert smallworld.main([str(tmp_path / "does" / "not" / "exist")]) == 1
        assert "couldn't open" in capsys.readouterr().err

    def test_zero_byte_file(self, tmp_path, capsys):
        path = tmp_path / "test.arc"
        path.write_bytes(b"")
        assert smallworld.main([str(path)]) == 1
        assert "invalid U8 file" in capsys.readouterr().err

    def test_empty_u8_file(self, tmp_path, capsys):
        path = tmp_path / "test.arc"
        path.write_bytes(EMPTY_ARCHIVE)
        assert smallworld.main([str(path)]) == 1
        assert "anim folder not found" in capsys.readouterr().err
        assert path.read_bytes() == EMPTY_ARCHIVE

    def test_region_free_in_place(self, tmp_path):
        path = tmp_path / "openingTitle.arc"
        path.write_bytes(build_archive(taiwan_tree(), TAIWAN_PAYLOAD).getvalue())
        assert smallworld.main([str(path)]) == 0
        root, payload_start = read_tree(io.BytesIO(path.read_bytes()))
        assert len(root.get("/arc/anim")) == 25
        assert len(root.get("/arc/blyt")) == 6

    def test_output_file(self, tmp_path):
        src = tmp_path / "in.arc"
        dst = tmp_path / "out.arc"
        original = build_archive(taiwan_tree(), TAIWAN_PAYLOAD).getvalue()
        src.write_bytes(original)
        assert smallworld.main([str(src), "-o", str(dst), "--from", "w", "--to", "j"]) == 0
        assert src.read_bytes() == original
        root, _ = read_tree(io.BytesIO(dst.read_bytes()))
        assert root == taiwan_tree(Region.J)

    def test_conflict_and_ignore_conflicts(self, tmp_path, capsys):
        path = tmp_path / "test.arc"
        original = conflicting_archive().getvalue()
        path.write_bytes(original)

        assert smallworld.main([str(path), "--to", "k"]) == 1
        assert "conflicting files" in capsys.readouterr().err
        assert path.read_bytes() == original

        assert smallworld.main([str(path), "--to", "k", "--ignore-conflicts"]) == 0
        assert file_data(io.BytesIO(path.read_bytes()), "/arc/blyt/openingTitle_KR_00.brlyt") == (
            b"JPNBRLYT"
        )

    @pytest.mark.parametrize(
        "option, value", [("--from", "p,x"), ("--to", "j,j"), ("--to", "")]
    )
    def test_bad_region_list(self, tmp_path, capsys, option, value):
        path = tmp_path / "test.arc"
        path.write_bytes(EMPTY_ARCHIVE)
        assert smallworld.main([str(path), option, value]) == 2
        assert f"couldn't read `{option}` region list" in capsys.readouterr().err
