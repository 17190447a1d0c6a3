"""Tests for line-window chunking and tokenization."""

from __future__ import annotations

import pytest

from codeindex.index._internal.indexing.chunking import (
    chunk_content,
    content_hash,
    detect_language_id,
    split_lines,
    tokenize,
    tokenize_terms,
    truncate_content,
)


class TestChunkContent:
    """chunk_content: fixed windows, stable ids, 1-based inclusive lines."""

    def test_given_fifty_lines_when_chunk_size_twenty_then_three_windows(self) -> None:
        # Given
        content = "".join(f"line {i}\n" for i in range(1, 51))

        # When
        chunks = chunk_content("a.ts", content, "typescript", 20)

        # Then
        assert [c.id for c in chunks] == ["a.ts#0", "a.ts#1", "a.ts#2"]
        assert [(c.start_line, c.end_line) for c in chunks] == [(1, 20), (21, 40), (41, 50)]
        assert chunks[0].content.splitlines()[0] == "line 1"
        assert chunks[2].end_char == len("line 50")
        assert all(c.language_id == "typescript" for c in chunks)

    def test_given_empty_content_then_no_chunks(self) -> None:
        assert chunk_content("c.ts", "") == []

    def test_given_same_input_twice_then_identical_chunks(self) -> None:
        content = "a\nb\nc\n"

        assert chunk_content("x.py", content, chunk_size_lines=2) == chunk_content(
            "x.py", content, chunk_size_lines=2
        )

    def test_given_chunk_hash_then_matches_window_text(self) -> None:
        chunks = chunk_content("x.py", "a\nb\n", chunk_size_lines=5)

        assert chunks[0].content == "a\nb"
        assert chunks[0].content_hash == content_hash("a\nb")

    @pytest.mark.parametrize("size", [0, -3])
    def test_given_non_positive_chunk_size_then_raises(self, size: int) -> None:
        with pytest.raises(ValueError, match="chunk_size_lines"):
            chunk_content("x.py", "a\n", chunk_size_lines=size)

    def test_given_crlf_line_endings_then_carriage_returns_stripped(self) -> None:
        assert split_lines("a\r\nb\r\n") == ["a", "b"]

    def test_given_no_trailing_newline_then_last_line_kept(self) -> None:
        assert split_lines("a\nb") == ["a", "b"]
        assert split_lines("a\n\n") == ["a", ""]


class TestTokenize:
    def test_terms_are_lowercased_and_split_on_punctuation(self) -> None:
        assert tokenize_terms("def getUser(self, user_id): return self.cache[user_id]") == [
            "def",
            "getuser",
            "self",
            "user_id",
            "return",
            "self",
            "cache",
            "user_id",
        ]

    def test_postings_carry_frequency_and_positions(self) -> None:
        # When
        postings = {p.term: p for p in tokenize("foo bar foo baz foo")}

        # Then
        assert postings["foo"].term_frequency == 3
        assert postings["foo"].positions == (0, 2, 4)
        assert postings["bar"].positions == (1,)

    def test_given_only_punctuation_then_no_postings(self) -> None:
        assert tokenize("(){}[];") == []


class TestHelpers:
    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("src/a.ts", "typescript"),
            ("pkg/mod.py", "python"),
            ("web/App.TSX", "typescriptreact"),
            ("README", None),
            ("data.bin", None),
        ],
    )
    def test_detect_language_id(self, path: str, expected: str | None) -> None:
        assert detect_language_id(path) == expected

    def test_content_hash_is_sha256_hex(self) -> None:
        digest = content_hash("abc")

        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        assert content_hash(b"abc") == digest

    def test_truncate_content_cuts_at_line_boundary(self) -> None:
        # Given
        content = "aaaa\nbbbb\ncccc\n"

        # When
        text, truncated = truncate_content(content, 12)

        # Then
        assert truncated is True
        assert text == "aaaa\nbbbb\n"

    def test_truncate_content_under_limit_is_unchanged(self) -> None:
        assert truncate_content("short\n", 100) == ("short\n", False)
