"""Unit tests for terminal output signal extraction."""

import json

import pytest

from agent_relay.models import PromptKind
from agent_relay.output_parser import (
    DEFAULT_SENTINEL,
    BraceMatcher,
    StreamScanner,
    detect_prompt,
    extract_resume_id,
    find_balanced_end,
    find_result_object,
    make_sentinel,
    strip_ansi,
)

from conftest import STALE_SENTINEL_LINE, result_json

DONE = make_sentinel(DEFAULT_SENTINEL, 1)


class TestStripAnsi:

    def test_removes_color_codes(self):
        assert strip_ansi("\x1b[32mgreen\x1b[0m text") == "green text"

    def test_normalizes_line_endings(self):
        assert strip_ansi("a\r\nb\rc") == "a\nb\nc"

    def test_removes_osc_title(self):
        assert strip_ansi("\x1b]0;title\x07prompt") == "prompt"


class TestResumeId:

    def test_session_id_field_wins_over_uuid(self):
        text = (
            "started 123e4567-e89b-12d3-a456-426614174000\n"
            '{"type":"result","session_id":"sess-abc"}'
        )
        assert extract_resume_id(text) == "sess-abc"

    def test_bare_uuid_fallback(self):
        assert extract_resume_id("Session 123E4567-E89B-12D3-A456-426614174000 ready") == (
            "123E4567-E89B-12D3-A456-426614174000"
        )

    def test_nothing_found(self):
        assert extract_resume_id("no ids here") is None


class TestResultObject:

    def test_balanced_end_ignores_braces_in_strings(self):
        text = '{"a": "}{", "b": {"c": 1}} trailing'
        end = find_balanced_end(text, 0)
        assert text[:end] == '{"a": "}{", "b": {"c": 1}}'

    def test_balanced_end_open_object(self):
        assert find_balanced_end('{"a": {"b": 1}', 0) is None

    def test_parses_complete_result(self):
        text = "noise " + result_json("hello") + " tail"
        parsed, end = find_result_object(text)
        assert parsed["result"] == "hello"
        assert text[end:] == " tail"

    def test_incomplete_result(self):
        assert find_result_object('{"type":"result","result":"par') == (None, -1)

    def test_hard_wrapped_result(self):
        parsed, _ = find_result_object('{"type":"result",\n"result":"ok"}')
        assert parsed == {"type": "result", "result": "ok"}

    def test_skips_unparseable_candidate(self):
        text = '{"type":"result", broken} then ' + result_json("second")
        parsed, _ = find_result_object(text)
        assert parsed["result"] == "second"

    def test_spaced_prefix(self):
        parsed, _ = find_result_object('{ "type" : "result", "result": "x" }')
        assert parsed["result"] == "x"


class TestBraceMatcher:

    def test_resumes_across_feeds(self):
        matcher = BraceMatcher()
        assert matcher.feed('{"a": "}{') is None
        assert matcher.in_string is True
        assert matcher.feed('", "b": {') is None
        assert matcher.depth == 2
        assert matcher.feed('"c": 1}} tail') == 8

    def test_escape_split_across_feeds(self):
        matcher = BraceMatcher()
        assert matcher.feed('{"a": "quote \\') is None
        assert matcher.feed('"} still in string') is None
        assert matcher.feed('"}') == 2


class TestPromptDetection:

    def test_binary_prompt(self):
        prompt = detect_prompt("Proceed?\n(y/n)")
        assert prompt.kind == PromptKind.BINARY
        assert prompt.options == ["Yes", "No"]
        assert prompt.title == "Proceed?"

    def test_bracketed_binary_prompt(self):
        prompt = detect_prompt("Overwrite file? [Y/n] ")
        assert prompt.kind == PromptKind.BINARY
        assert prompt.title == "Overwrite file?"

    def test_menu_prompt(self):
        prompt = detect_prompt("Pick one?\n1. Apply\n2. Skip\n3. Abort")
        assert prompt.kind == PromptKind.MENU
        assert prompt.title == "Pick one?"
        assert prompt.options == ["Apply", "Skip", "Abort"]

    def test_menu_with_selection_marker(self):
        text = "Do you want to make this edit?\n❯ 1. Yes\n  2. Yes, allow all edits\n  3. No\n"
        prompt = detect_prompt(text)
        assert prompt.kind == PromptKind.MENU
        assert prompt.options == ["Yes", "Yes, allow all edits", "No"]

    def test_single_numbered_line_is_not_a_menu(self):
        assert detect_prompt("Really?\n1. Only choice\n") is None

    def test_unsettled_menu_waits_for_following_line(self):
        assert detect_prompt("Pick one?\n1. Apply\n2. Skip\n", settled=False) is None
        prompt = detect_prompt("Pick one?\n1. Apply\n2. Skip\n\n", settled=False)
        assert prompt.options == ["Apply", "Skip"]

    def test_unsettled_menu_ignores_partial_option(self):
        assert detect_prompt("Pick one?\n1. Apply\n2. Sk", settled=False) is None

    def test_later_menu_after_single_option_list(self):
        text = "Really?\n1. Only choice\nok\nPick one?\n1. A\n2. B\n"
        assert detect_prompt(text).options == ["A", "B"]

    def test_menu_wins_over_binary(self):
        prompt = detect_prompt("Continue? (y/n)\nWhich one?\n1. A\n2. B\n")
        assert prompt.kind == PromptKind.MENU

    def test_trust_phrase_with_numbered_options(self):
        prompt = detect_prompt("Trust this folder to continue\n 1. Yes\n 2. No\n")
        assert prompt.kind == PromptKind.MENU
        assert prompt.options == ["Yes, trust this folder", "No, exit"]
        assert prompt.title == "Trust this folder to continue"

    def test_trust_phrase_without_options(self):
        prompt = detect_prompt("Please Trust This Workspace before continuing")
        assert prompt.kind == PromptKind.BINARY
        assert prompt.options == ["Yes", "No"]

    def test_plain_output(self):
        assert detect_prompt("Compiling...\nDone.\n") is None


class TestStreamScanner:

    def test_result_split_at_any_point(self):
        text = 'noise ' + result_json('a {brace} and "quotes"', session_id="s-1") + "\n"
        expected = json.loads(result_json('a {brace} and "quotes"', session_id="s-1"))
        for split in range(1, len(text)):
            scanner = StreamScanner()
            found = [
                r.result for r in (scanner.scan(text[:split]), scanner.scan(text[split:]))
                if r.result is not None
            ]
            assert found == [expected], f"split at {split}"

    def test_result_consumed_once(self):
        scanner = StreamScanner()
        assert scanner.scan(result_json("one") + "\n").result["result"] == "one"
        assert scanner.scan("more output\n").result is None

    def test_sentinel_split_across_chunks(self):
        scanner = StreamScanner()
        assert scanner.scan("output\n___AGENT_", sentinel=DONE).completed is False
        assert scanner.scan("DONE_1___\n", sentinel=DONE).completed is True

    def test_sentinel_needs_line_end(self):
        scanner = StreamScanner()
        assert scanner.scan(DONE, sentinel=DONE).completed is False
        assert scanner.scan("\n", sentinel=DONE).completed is True

    def test_sentinel_with_crlf_and_padding(self):
        scanner = StreamScanner()
        assert scanner.scan(f"  {DONE}  \r\n", sentinel=DONE).completed is True

    def test_sentinel_inside_line_does_not_complete(self):
        scanner = StreamScanner()
        assert scanner.scan(f'echo "{DONE}"\n', sentinel=DONE).completed is False

    def test_sentinel_ignored_when_idle(self):
        scanner = StreamScanner()
        assert scanner.scan(f"{DONE}\n", sentinel=None).completed is False

    def test_only_expected_sentinel_completes(self):
        scanner = StreamScanner()
        earlier = make_sentinel(DEFAULT_SENTINEL, 0)
        assert scanner.scan(f"{earlier}\n", sentinel=DONE).completed is False
        assert scanner.scan(STALE_SENTINEL_LINE, sentinel=DONE).completed is False
        assert scanner.scan(f"{DONE}\n", sentinel=DONE).completed is True

    def test_make_sentinel(self):
        assert make_sentinel("___AGENT_DONE___", 7) == "___AGENT_DONE_7___"
        assert make_sentinel("__END__", 12) == "__END_12___"

    def test_resume_id_only_while_awaiting(self):
        text = '{"session_id": "abc-123"}\n'
        assert StreamScanner().scan(text, awaiting_resume_id=False).resume_id is None
        assert StreamScanner().scan(text, awaiting_resume_id=True).resume_id == "abc-123"

    def test_resume_id_split_across_chunks(self):
        scanner = StreamScanner()
        assert scanner.scan('{"session_', awaiting_resume_id=True).resume_id is None
        assert scanner.scan('id": "abc-123"}', awaiting_resume_id=True).resume_id == "abc-123"

    def test_prompt_reported_once(self):
        scanner = StreamScanner()
        first = scanner.scan("Proceed?\n(y/n)")
        assert first.prompt is not None
        assert first.prompt.options == ["Yes", "No"]
        assert scanner.scan("").prompt is None

    def test_prompt_suppressed_while_pending(self):
        scanner = StreamScanner()
        assert scanner.scan("Proceed?\n(y/n)", prompt_pending=True).prompt is None

    def test_prompt_split_across_chunks(self):
        scanner = StreamScanner()
        first = scanner.scan("Pick one?\n1. Apply\n2. Sk")
        assert first.prompt is None
        assert first.prompt_unsettled is True
        assert scanner.scan("ip\n3. Abort\n").prompt is None
        prompt = scanner.scan("Esc to cancel\n").prompt
        assert prompt is not None
        assert prompt.options == ["Apply", "Skip", "Abort"]

    def test_settle_reports_unterminated_menu(self):
        scanner = StreamScanner()
        assert scanner.scan("Pick one?\n1. Apply\n2. Skip").prompt is None
        prompt = scanner.settle()
        assert prompt.options == ["Apply", "Skip"]
        assert scanner.settle() is None

    def test_settle_without_prompt(self):
        scanner = StreamScanner()
        scanner.scan("Compiling...\n")
        assert scanner.settle() is None

    def test_reset_forgets_partial_line(self):
        scanner = StreamScanner()
        scanner.scan("___AGENT_", sentinel=DONE)
        scanner.reset()
        assert scanner.scan("DONE_1___\n", sentinel=DONE).completed is False

    @pytest.mark.parametrize("noise", ["x" * 5000, "line\n" * 2000])
    def test_buffer_stays_bounded_without_results(self, noise):
        scanner = StreamScanner(carry_chars=512)
        scanner.scan(noise)
        assert len(scanner._buffer) <= 512

    def test_oversized_object_discarded(self):
        scanner = StreamScanner(max_buffer_chars=1000, carry_chars=64)
        scanner.scan('{"type":"result","result":"' + "x" * 2000)
        assert scanner._object_parts is None
        assert scanner.scan(result_json("next") + "\n").result["result"] == "next"

    def test_large_result_in_many_chunks(self):
        text = result_json("y" * 50_000) + "\n"
        scanner = StreamScanner()
        found = [r.result for r in (scanner.scan(text[i:i + 100]) for i in range(0, len(text), 100)) if r.result]
        assert len(found) == 1
        assert found[0]["result"] == "y" * 50_000

    def test_unparseable_candidate_skipped_across_chunks(self):
        scanner = StreamScanner()
        assert scanner.scan('{"type":"result", bro').result is None
        parsed = scanner.scan("ken} " + result_json("second") + "\n").result
        assert parsed["result"] == "second"
