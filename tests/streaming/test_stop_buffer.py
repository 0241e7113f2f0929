"""Tests for the streaming stop-sequence filter."""

import pytest

from tokenstream_lite.streaming.stop_buffer import StopSequenceBuffer, leading_character, scan


def feed_all(buffer, fragments):
    return [buffer.feed(f) for f in fragments]


@pytest.mark.unit
class TestLeadingCharacter:
    def test_shared_lead(self):
        assert leading_character(["<|user|>", "<|im_end|>"]) == "<"

    def test_mismatched_leads_rejected(self):
        with pytest.raises(ValueError, match="leading character"):
            leading_character(["<|user|>", "###"])
        with pytest.raises(ValueError, match="leading character"):
            StopSequenceBuffer(["<|user|>", "###"])

    def test_empty_markers_rejected(self):
        with pytest.raises(ValueError):
            leading_character([])
        with pytest.raises(ValueError):
            leading_character(["<|user|>", ""])


@pytest.mark.unit
class TestScan:
    markers = ("<|user|>", "<|im_start|>", "<|im_end|>")

    def test_no_lead(self):
        result = scan("hello", 0, self.markers, "<")
        assert (result.emit, result.released, result.stopped) == ("hello", 5, False)

    def test_holds_possible_prefix(self):
        result = scan("ab <|im", 0, self.markers, "<")
        assert (result.emit, result.released, result.stopped) == ("ab ", 3, False)

    def test_only_unreleased_suffix_scanned(self):
        result = scan("x <3 y <|", 4, self.markers, "<")
        assert (result.emit, result.released) == (" y ", 7)

    def test_full_marker_stops(self):
        result = scan("ok<|user|>", 0, self.markers, "<")
        assert result.stopped
        assert result.emit == ""


@pytest.mark.unit
class TestStopSequenceBuffer:
    def test_plain_text_passes_through(self):
        buffer = StopSequenceBuffer()
        assert feed_all(buffer, ["Hello", ",", " world"]) == ["Hello", ",", " world"]
        assert buffer.pending == ""
        assert not buffer.stopped

    def test_marker_split_across_fragments(self):
        buffer = StopSequenceBuffer()
        emitted = feed_all(buffer, ["Done.", " <", "|im", "_end", "|>"])

        assert "".join(emitted) == "Done. "
        assert buffer.stopped
        assert "<" not in "".join(emitted)

    def test_text_sharing_fragment_with_marker_is_dropped(self):
        buffer = StopSequenceBuffer()
        assert buffer.feed("bye<|user|>") == ""
        assert buffer.stopped

    def test_false_alarm_released(self):
        """A lead character that cannot become a marker is released."""
        buffer = StopSequenceBuffer()
        assert buffer.feed("I <") == "I "
        assert buffer.pending == "<"
        assert buffer.feed("3 you") == "<3 you"
        assert buffer.pending == ""

    def test_lead_released_once_it_diverges(self):
        buffer = StopSequenceBuffer()
        assert feed_all(buffer, ["a <|", "i"]) == ["a ", ""]
        assert buffer.feed("x") == "<|ix"

    def test_nothing_after_stop(self):
        buffer = StopSequenceBuffer()
        buffer.feed("<|im_start|>")
        assert buffer.feed("more") == ""
        assert buffer.pending == ""

    def test_holdback_bound(self):
        buffer = StopSequenceBuffer()
        assert buffer.max_holdback == len("<|im_start|>") - 1
        buffer.feed("x<|im_start|")
        assert len(buffer.pending) <= buffer.max_holdback

    def test_emitted_text_never_contains_marker(self):
        buffer = StopSequenceBuffer()
        fragments = ["The ", "tag ", "<b>", " and ", "<|", "im", "_st", "art|>", "tail"]
        emitted = "".join(feed_all(buffer, fragments))

        assert emitted == "The tag <b> and "
        for marker in buffer.markers:
            assert marker not in emitted

    def test_reset(self):
        buffer = StopSequenceBuffer()
        buffer.feed("hi<|user|>")
        buffer.reset()
        assert not buffer.stopped
        assert buffer.text == ""
        assert buffer.feed("again") == "again"

    def test_custom_markers(self):
        buffer = StopSequenceBuffer(["#END", "#STOP"])
        assert buffer.feed("a #") == "a "
        assert buffer.feed("EN") == ""
        assert buffer.feed("D") == ""
        assert buffer.stopped

    def test_lead_inside_marker_rejected(self):
        with pytest.raises(ValueError, match="only at the start"):
            StopSequenceBuffer(["###", "##END"])
