"""Tests for chunk readers."""

import pytest

from conftest import write_people

from chunkbatch.errors import MalformedRecord, SourceUnavailable
from chunkbatch.readers import END_OF_INPUT, DelimitedFileReader, IterableReader
from chunkbatch.records import Person


def _read_all(reader):
    items, errors = [], []
    while True:
        try:
            item = reader.read()
        except MalformedRecord as e:
            errors.append(e)
            continue
        if item is END_OF_INPUT:
            return items, errors
        items.append(item)


def _person_reader(path, **kwargs):
    return DelimitedFileReader(
        path,
        names=["name", "email", "age", "id"],
        comments=("--",),
        record_factory=Person.from_fields,
        **kwargs,
    )


class TestDelimitedFileReader:
    """Tests for DelimitedFileReader."""

    def test_reads_person_records(self, tmp_path):
        path = tmp_path / "people.csv"
        path.write_text(
            "-- name,email,age,id\n"
            "Ada,ada@example.com,36,\n"
            "\n"
            "Alan,alan@example.com,41,7\n"
        )
        reader = _person_reader(path)
        reader.open()
        items, errors = _read_all(reader)
        reader.close()

        assert errors == []
        assert items == [
            Person("Ada", "ada@example.com", 36, None),
            Person("Alan", "alan@example.com", 41, 7),
        ]
        assert reader.position == 2

    def test_comment_lines_do_not_count(self, tmp_path):
        path = tmp_path / "people.csv"
        path.write_text("-- one\n-- two\nA,a@x,1,\n-- three\nB,b@x,2,\n")
        reader = _person_reader(path)
        reader.open()
        reader.read()
        assert reader.position == 1
        reader.read()
        assert reader.position == 2
        assert reader.read() is END_OF_INPUT
        reader.close()

    def test_malformed_line_reports_line_number(self, tmp_path):
        path = write_people(tmp_path / "people.csv", 5, malformed=(3,))
        reader = _person_reader(path)
        reader.open()
        items, errors = _read_all(reader)
        reader.close()

        assert len(items) == 4
        assert len(errors) == 1
        # Line 1 is the comment header, so record 3 is on line 4
        assert errors[0].line == 4
        assert "line 4" in str(errors[0])
        assert "not-a-number" in errors[0].raw
        assert reader.position == 5

    def test_wrong_column_count(self, tmp_path):
        path = tmp_path / "people.csv"
        path.write_text("A,a@x,1\n")
        reader = _person_reader(path)
        reader.open()
        with pytest.raises(MalformedRecord, match="expected 4 fields, got 3"):
            reader.read()
        assert reader.position == 1
        reader.close()

    def test_open_at_position_skips_records(self, tmp_path):
        path = write_people(tmp_path / "people.csv", 10)
        reader = _person_reader(path)
        reader.open(7)
        assert reader.position == 7
        items, _ = _read_all(reader)
        reader.close()
        assert [p.name for p in items] == ["Person 8", "Person 9", "Person 10"]

    def test_open_past_end(self, tmp_path):
        path = write_people(tmp_path / "people.csv", 3)
        reader = _person_reader(path)
        reader.open(10)
        assert reader.position == 3
        assert reader.read() is END_OF_INPUT
        reader.close()

    def test_missing_file(self, tmp_path):
        reader = _person_reader(tmp_path / "missing.csv")
        with pytest.raises(SourceUnavailable, match="missing.csv"):
            reader.open()

    def test_dict_records_and_custom_delimiter(self, tmp_path):
        path = tmp_path / "rows.tsv"
        path.write_text("# comment\na\tb\n")
        reader = DelimitedFileReader(path, names=["x", "y"], delimiter="\t")
        reader.open()
        assert reader.read() == {"x": "a", "y": "b"}
        reader.close()

    def test_skip_lines(self, tmp_path):
        path = tmp_path / "rows.csv"
        path.write_text("x,y\n1,2\n")
        reader = DelimitedFileReader(path, names=["x", "y"], skip_lines=1)
        reader.open()
        assert reader.read() == {"x": "1", "y": "2"}
        assert reader.position == 1
        reader.close()

    def test_read_before_open(self, tmp_path):
        reader = _person_reader(tmp_path / "people.csv")
        with pytest.raises(RuntimeError, match="not open"):
            reader.read()

    def test_undecodable_line_is_malformed(self, tmp_path):
        path = tmp_path / "people.csv"
        path.write_bytes(
            b"-- name,email,age,id\n"
            b"Ada,ada@example.com,36,\n"
            b"\xff\xfe,b@example.com,31,\n"
            b"Alan,alan@example.com,41,\n"
        )
        reader = _person_reader(path)
        reader.open()

        assert reader.read().name == "Ada"
        with pytest.raises(MalformedRecord, match="cannot decode") as excinfo:
            reader.read()
        assert excinfo.value.line == 3
        assert reader.position == 2
        assert reader.read().name == "Alan"
        assert reader.position == 3
        reader.close()

    def test_resume_past_undecodable_line(self, tmp_path):
        path = tmp_path / "people.csv"
        path.write_bytes(b"\xff,a@x,1,\nB,b@x,2,\nC,c@x,3,\n")
        reader = _person_reader(path)
        reader.open(position=2)
        assert reader.position == 2
        assert reader.read().name == "C"
        reader.close()

    def test_crlf_line_endings(self, tmp_path):
        path = tmp_path / "people.csv"
        path.write_bytes(b"A,a@x,1,\r\nB,b@x,2,\r\n")
        reader = _person_reader(path)
        reader.open()
        items, errors = _read_all(reader)
        reader.close()
        assert errors == []
        assert [p.name for p in items] == ["A", "B"]


class TestIterableReader:
    """Tests for IterableReader."""

    def test_reads_items_then_end(self):
        reader = IterableReader([1, 2])
        reader.open()
        assert reader.read() == 1
        assert reader.read() == 2
        assert reader.read() is END_OF_INPUT
        assert reader.position == 2

    def test_raises_exception_items(self):
        reader = IterableReader([1, MalformedRecord("bad"), 3])
        reader.open()
        reader.read()
        with pytest.raises(MalformedRecord):
            reader.read()
        assert reader.position == 2
        assert reader.read() == 3

    def test_open_at_position(self):
        reader = IterableReader(["a", "b", "c"])
        reader.open(2)
        assert reader.read() == "c"

    def test_end_of_input_is_falsy_singleton(self):
        assert not END_OF_INPUT
        assert repr(END_OF_INPUT)
