"""Stream event parser tests."""

from nightshift.core.executors.stream import StreamEventParser, StreamEventType


class TestStreamEventParser:
    """Newline-delimited JSON decoding."""

    def test_claude_style_stream(self):
        parser = StreamEventParser()
        parser.feed_line('{"type":"system","subtype":"init","session_id":"abc-123"}')
        parser.feed_line('{"type":"assistant","message":{"content":[{"type":"text","text":"Hello "}]}}')
        parser.feed_line('{"type":"assistant","message":{"content":[{"type":"tool_use","name":"Read"}]}}')
        parser.feed_line('{"type":"assistant","message":{"content":[{"type":"text","text":"there"}]}}')

        assert parser.session_id == "abc-123"
        assert parser.text == "Hello there"
        assert parser.event_count == 4

    def test_result_overrides_accumulated_text(self):
        parser = StreamEventParser()
        parser.feed_line('{"type":"content_block_delta","delta":{"text":"partial"}}')
        parser.feed_line('{"type":"result","result":"complete","stats":{"tokens":12}}')

        assert parser.text == "complete"
        assert parser.stats == {"tokens": 12}

    def test_result_without_text_keeps_chunks(self):
        parser = StreamEventParser()
        parser.feed_line('{"type":"message","role":"assistant","content":"kept"}')
        parser.feed_line('{"type":"result","stats":{}}')

        assert parser.text == "kept"

    def test_gemini_style_stream(self):
        parser = StreamEventParser()
        parser.feed_line('{"type":"init","session_id":"g-1"}')
        parser.feed_line('{"type":"message","role":"user","content":"question"}')
        parser.feed_line('{"type":"message","role":"assistant","content":"answer"}')

        assert parser.session_id == "g-1"
        assert parser.text == "answer"

    def test_first_session_id_sticks(self):
        parser = StreamEventParser()
        parser.feed_line('{"type":"init","session_id":"first"}')
        parser.feed_line('{"type":"init","session_id":"second"}')

        assert parser.session_id == "first"

    def test_error_events_collected(self):
        parser = StreamEventParser()
        parser.feed_line('{"type":"error","message":"quota exceeded"}')
        parser.feed_line('{"type":"error","error":{"message":"nested"}}')
        parser.feed_line('{"type":"result","is_error":true,"result":"401 Unauthorized"}')

        assert parser.errors == ["quota exceeded", "nested", "401 Unauthorized"]
        assert not parser.has_content

    def test_garbage_is_ignored(self):
        parser = StreamEventParser()
        assert parser.feed_line("not json at all") is None
        assert parser.feed_line("[1, 2]") is None
        assert parser.feed_line('"string"') is None
        assert parser.feed_line("   ") is None

        assert parser.ignored_lines == 3
        assert parser.event_count == 0
        assert parser.text == ""

    def test_deeply_nested_line_is_ignored(self):
        parser = StreamEventParser()
        assert parser.feed_line("[" * 100000 + "]" * 100000) is None
        parser.feed_line('{"type":"message","role":"assistant","content":"still reading"}')

        assert parser.ignored_lines == 1
        assert parser.text == "still reading"

    def test_unknown_event_type(self):
        parser = StreamEventParser()
        event = parser.feed_line('{"type":"tool_result","content":"x"}')

        assert event is not None
        assert event.event_type == StreamEventType.OTHER
        assert not parser.has_content
