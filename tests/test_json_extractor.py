"""Tests for JSON extraction from agent output."""
import json

from claudito.json_extractor import JSONExtractor
from claudito.models import ReviewerDecision, ReviewerVerdict


class TestExtractJson:

    def setup_method(self):
        self.extractor = JSONExtractor()

    def test_bare_json(self):
        assert self.extractor.extract_json('{"decision": "approve"}') == {"decision": "approve"}

    def test_json_in_code_block(self):
        text = 'Here is my verdict:\n```json\n{"decision": "reject"}\n```\nThanks.'

        assert self.extractor.extract_json(text) == {"decision": "reject"}

    def test_json_embedded_in_prose(self):
        text = 'The result is {"decision": "needs_changes", "feedback": "add {braces} test"} overall.'

        assert self.extractor.extract_json(text) == {
            "decision": "needs_changes",
            "feedback": "add {braces} test",
        }

    def test_prefer_last_picks_final_object(self):
        text = 'First {"a": 1} then {"b": 2}'

        assert self.extractor.extract_json(text) == {"a": 1}
        assert self.extractor.extract_json(text, prefer_last=True) == {"b": 2}

    def test_empty_and_plain_text_return_none(self):
        assert self.extractor.extract_json("") is None
        assert self.extractor.extract_json("no json here") is None


class TestExtractToModel:

    def setup_method(self):
        self.extractor = JSONExtractor()

    def test_skips_objects_that_do_not_fit_the_model(self):
        text = (
            'I looked at {"file": "app.py"} and decided:\n'
            '{"decision": "approve", "feedback": "looks good", "specificIssues": []}'
        )

        verdict = self.extractor.extract_to_model(text, ReviewerVerdict)

        assert verdict is not None
        assert verdict.decision == ReviewerDecision.APPROVE
        assert verdict.feedback == "looks good"

    def test_decision_spelling_is_normalized(self):
        verdict = self.extractor.extract_to_model('{"decision": "Needs-Changes"}', ReviewerVerdict)

        assert verdict.decision == ReviewerDecision.NEEDS_CHANGES

    def test_reads_text_out_of_stream_json_lines(self):
        event = {
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": 'Verdict: {"decision": "reject", "feedback": "wrong repo"}'}]},
        }
        text = "\n".join([json.dumps({"type": "system", "subtype": "init"}), json.dumps(event)])

        verdict = self.extractor.extract_to_model(text, ReviewerVerdict)

        assert verdict is not None
        assert verdict.decision == ReviewerDecision.REJECT

    def test_invalid_decision_returns_none(self):
        assert self.extractor.extract_to_model('{"decision": "maybe"}', ReviewerVerdict) is None
