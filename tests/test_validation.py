"""
Tests for aimem.validation — tags, content, entries, sanitizers, batching.
"""

import threading

import pytest

from aimem.config import ValidationConfig
from aimem.errors import OperationCancelled, ValidationError
from aimem.types import Entry
from aimem.validation import (
    BatchProcessor,
    MemoryValidator,
    escape_like,
    escape_sql_string,
    sanitize_content,
    sanitize_path,
    sanitize_tag,
)


@pytest.fixture
def validator():
    return MemoryValidator()


def _entry(**kw):
    data = dict(file_type="DECISION", content="Use SQLite", tag="[DECISION:2025-12-04]",
                timestamp="2025-12-04T10:00:00.000Z")
    data.update(kw)
    return Entry(**data)


class TestTags:
    @pytest.mark.parametrize("tag", [
        "[DECISION:2025-12-04]",
        "[RESEARCH_REPORT:2024-02-29]",
        "[DEPRECATED:2025-01-01]",
    ])
    def test_valid(self, validator, tag):
        assert validator.validate_tag(tag)

    @pytest.mark.parametrize("tag", [
        "[decision:2025-12-04]",
        "[DECISION:2025-13-04]",
        "DECISION:2025-12-04",
        "[DECISION:2025-02-30]",
        "[NOTE:2025-12-04]",
        "[DECISION:25-12-04]",
        "",
    ])
    def test_invalid(self, validator, tag):
        assert not validator.validate_tag(tag)

    def test_length_limit(self):
        v = MemoryValidator(ValidationConfig(max_tag_length=16))
        assert not v.validate_tag("[DECISION:2025-12-04]")


class TestContent:
    def test_empty_rejected(self, validator):
        assert validator.validate_content("   ")

    def test_byte_limit_is_inclusive(self):
        v = MemoryValidator(ValidationConfig(max_content_bytes=4))
        assert v.validate_content("abcd") == []
        assert v.validate_content("abcde")

    def test_limit_counts_encoded_bytes(self):
        v = MemoryValidator(ValidationConfig(max_content_bytes=4))
        # Two characters, six bytes
        assert v.validate_content("€€")


class TestEntryValidation:
    def test_valid_entry(self, validator):
        result = validator.validate_entry(_entry())
        assert result.valid and result.errors == []

    def test_collects_all_errors(self, validator):
        e = _entry(tag="[decision:2025-12-04]", timestamp="never", content="")
        result = validator.validate_entry(e)
        assert not result.valid
        assert len(result.errors) == 3

    def test_bad_metadata(self, validator):
        result = validator.validate_entry(_entry(metadata={"progress": "finished"}))
        assert any("metadata.progress" in err for err in result.errors)

    def test_raise_if_invalid(self, validator):
        with pytest.raises(ValidationError) as exc:
            validator.validate_entry(_entry(tag="")).raise_if_invalid()
        assert exc.value.errors == ["tag is required"]

    def test_validate_entries_reports_indexes(self, validator):
        entries = [_entry(), _entry(content=" "), _entry(), _entry(tag="x")]
        failures = validator.validate_entries(entries)
        assert [i for i, _ in failures] == [1, 3]


class TestSanitizers:
    def test_sanitize_content(self):
        assert sanitize_content("a\x00b\r\n\r\n\r\n\r\nc  ") == "ab\n\nc"

    def test_sanitize_tag_legacy(self):
        assert sanitize_tag(" DECISION:2025-12-04 ") == "[DECISION:2025-12-04]"
        assert sanitize_tag("[PATTERN:2025-01-01]") == "[PATTERN:2025-01-01]"

    def test_sanitize_path(self):
        assert sanitize_path("../../etc/passwd") == "etc/passwd"
        assert sanitize_path("a/..\\b") == "a/b"

    def test_escapes(self):
        assert escape_sql_string("it's") == "it''s"
        assert escape_like("50%_off\\") == "50\\%\\_off\\\\"


class TestBatchProcessor:
    def test_rejects_bad_batch_size(self):
        with pytest.raises(ValueError):
            BatchProcessor(0)

    def test_processes_in_order(self):
        out = BatchProcessor(3).process(list(range(7)), lambda x: x * 2)
        assert out.results == [0, 2, 4, 6, 8, 10, 12]
        assert out.processed == 7

    def test_isolate_records_failures(self):
        def fn(x):
            if x == 2:
                raise ValueError("two")
            return x

        out = BatchProcessor(2).process([0, 1, 2, 3], fn, isolate=True)
        assert out.results == [0, 1, 3]
        assert out.failures == [(2, "two")]

    def test_without_isolate_raises(self):
        with pytest.raises(ZeroDivisionError):
            BatchProcessor(2).process([1, 0], lambda x: 1 / x)

    def test_cancel_at_chunk_boundary(self):
        cancel = threading.Event()
        seen = []

        def fn(x):
            seen.append(x)
            if x == 1:
                cancel.set()

        with pytest.raises(OperationCancelled) as exc:
            BatchProcessor(2).process(list(range(6)), fn, cancel=cancel)
        assert seen == [0, 1]
        assert exc.value.processed == 2
