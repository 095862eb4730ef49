"""
Tests for message splitting.

Coverage:
  identity for short bodies, greedy line packing, hard-splitting of
  over-long lines, chunk length bound, lossless reassembly
"""
import pytest

from channels.splitter import Chunk, join_chunks, split_message


class TestSplitMessage:
    def test_short_body_is_single_chunk(self):
        assert split_message("hello", 4000) == ["hello"]

    def test_body_at_exact_limit_is_not_split(self):
        body = "x" * 4000
        chunks = split_message(body, 4000)
        assert chunks == [body]

    def test_empty_body(self):
        assert split_message("", 10) == [""]

    def test_invalid_max_length(self):
        with pytest.raises(ValueError):
            split_message("abc", 0)

    def test_lines_packed_greedily(self):
        body = "aaaa\nbbbb\ncccc\ndddd"
        chunks = split_message(body, 10, reserve=0)
        assert chunks == ["aaaa\nbbbb", "cccc\ndddd"]

    def test_long_line_hard_split_with_reserve(self):
        body = "x" * 9000
        chunks = split_message(body, 4000)
        assert [len(c) for c in chunks] == [3950, 3950, 1100]
        assert chunks[0].continues_line is False
        assert chunks[1].continues_line is True
        assert chunks[2].continues_line is True

    def test_long_line_flushes_pending_text(self):
        body = "intro\n" + "y" * 25 + "\noutro"
        chunks = split_message(body, 12, reserve=2)
        assert chunks[0] == "intro"
        assert chunks[1:4] == ["y" * 10, "y" * 10, "y" * 5]
        assert chunks[-1] == "outro"
        assert chunks[-1].continues_line is False

    def test_every_chunk_within_limit(self):
        lines = [("word " * n).strip() for n in range(1, 60)]
        body = "\n".join(lines)
        for chunk in split_message(body, 80, reserve=10):
            assert len(chunk) <= 80

    def test_reserve_larger_than_limit_still_progresses(self):
        chunks = split_message("abcdef", 3, reserve=50)
        assert chunks == ["a", "b", "c", "d", "e", "f"]

    def test_chunks_are_plain_strings(self):
        chunks = split_message("a\nb", 1, reserve=0)
        assert all(isinstance(c, str) for c in chunks)
        assert all(isinstance(c, Chunk) for c in chunks)


class TestJoinChunks:
    @pytest.mark.parametrize("body,max_length", [
        ("plain text", 100),
        ("line one\nline two\nline three", 12),
        ("x" * 9000, 4000),
        ("head\n" + "z" * 130 + "\n\ntail\n", 40),
        ("\n\n\n", 1),
    ])
    def test_lossless(self, body, max_length):
        assert join_chunks(split_message(body, max_length)) == body

    def test_newline_join_when_nothing_hard_split(self):
        body = "first line\nsecond line\nthird line"
        chunks = split_message(body, 22)
        assert "\n".join(chunks) == body

    def test_plain_strings_joined_with_newlines(self):
        assert join_chunks(["a", "b"]) == "a\nb"
