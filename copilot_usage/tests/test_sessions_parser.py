import copy
import json
import tempfile
import unittest
from pathlib import Path

from copilot_usage.parsers.sessions import (
    harvest_path_metadata,
    is_valid_session,
    map_legacy_fields,
    parse_session_text,
)


def _turn(index: int) -> dict:
    return {
        "requestId": f"request_{index}",
        "responseId": f"response_{index}",
        "timestamp": 1754838920000 + index * 1000,
        "modelId": "copilot/gpt-4o",
        "message": {"text": f"question {index}", "parts": []},
        "agent": {"id": "github.copilot.editsAgent", "name": "agent"},
        "response": [{"value": "answer"}],
        "result": {
            "timings": {"firstProgress": 800, "totalElapsed": 1200},
            "metadata": {
                "toolCallRounds": [
                    {
                        "id": f"round_{index}",
                        "response": "reading files",
                        "toolCalls": [{"id": "call_1", "name": "read_file", "arguments": "{\"path\": \"a.py\"}"}],
                        "toolInputRetry": 0,
                    }
                ]
            },
        },
    }


def _session(session_id: str = "2b7c1f0e-aaaa", turns: int = 2) -> dict:
    return {
        "version": 3,
        "sessionId": session_id,
        "creationDate": 1754838900000,
        "lastMessageDate": 1754838990000,
        "requesterUsername": "dev",
        "responderUsername": "GitHub Copilot",
        "initialLocation": "panel",
        "turns": [_turn(i) for i in range(turns)],
    }


class SessionValidationTests(unittest.TestCase):
    def test_well_formed_session_is_valid(self) -> None:
        self.assertTrue(is_valid_session(_session()))

    def test_optional_turn_fields_may_be_absent(self) -> None:
        doc = _session()
        del doc["turns"][0]["modelId"]
        del doc["turns"][0]["agent"]
        del doc["turns"][1]["result"]
        del doc["lastMessageDate"]

        self.assertTrue(is_valid_session(doc))

    def test_top_level_type_violations_reject_the_document(self) -> None:
        cases = {
            "sessionId": 42,
            "creationDate": "2025-08-10",
            "lastMessageDate": "later",
            "version": None,
            "turns": {"0": {}},
        }
        for key, bad_value in cases.items():
            with self.subTest(key=key):
                doc = _session()
                doc[key] = bad_value
                self.assertFalse(is_valid_session(doc))

    def test_booleans_are_not_accepted_as_numbers(self) -> None:
        doc = _session()
        doc["creationDate"] = True

        self.assertFalse(is_valid_session(doc))

    def test_single_malformed_turn_rejects_whole_document(self) -> None:
        doc = _session(turns=3)
        del doc["turns"][2]["timestamp"]

        self.assertFalse(is_valid_session(doc))

    def test_agent_without_id_is_rejected(self) -> None:
        doc = _session()
        doc["turns"][0]["agent"] = {"name": "agent"}

        self.assertFalse(is_valid_session(doc))

    def test_malformed_tool_call_round_is_rejected(self) -> None:
        for mutate in (
            lambda r: r.update(toolInputRetry="0"),
            lambda r: r.update(toolCalls=None),
            lambda r: r["toolCalls"][0].update(arguments={"path": "a.py"}),
            lambda r: r["toolCalls"][0].update(name=""),
            lambda r: r.pop("response"),
        ):
            doc = _session()
            mutate(doc["turns"][1]["result"]["metadata"]["toolCallRounds"][0])
            self.assertFalse(is_valid_session(doc))

    def test_non_list_tool_call_rounds_are_rejected(self) -> None:
        doc = _session()
        doc["turns"][0]["result"]["metadata"]["toolCallRounds"] = {"id": "round"}

        self.assertFalse(is_valid_session(doc))


class SessionParsingTests(unittest.TestCase):
    def test_legacy_requests_key_is_renamed_to_turns(self) -> None:
        doc = _session(turns=2)
        doc["requests"] = doc.pop("turns")

        mapped = map_legacy_fields(copy.deepcopy(doc))

        self.assertNotIn("requests", mapped)
        self.assertEqual(len(mapped["turns"]), 2)

    def test_parse_session_text_builds_models(self) -> None:
        doc = _session(turns=2)
        doc["requests"] = doc.pop("turns")

        session = parse_session_text(json.dumps(doc))

        self.assertIsNotNone(session)
        assert session is not None
        self.assertEqual(session.sessionId, "2b7c1f0e-aaaa")
        self.assertEqual(len(session.turns), 2)
        rounds = session.turns[0].tool_call_rounds
        self.assertEqual(rounds[0].toolCalls[0].name, "read_file")
        self.assertEqual(session.turns[0].timings.totalElapsed, 1200)
        # unknown keys from newer editor builds survive
        self.assertEqual(session.turns[0].response, [{"value": "answer"}])

    def test_parse_session_text_returns_none_for_invalid_structure(self) -> None:
        doc = _session()
        doc["sessionId"] = None

        self.assertIsNone(parse_session_text(json.dumps(doc)))

    def test_parse_session_text_raises_on_malformed_json(self) -> None:
        with self.assertRaises(json.JSONDecodeError):
            parse_session_text("{\"sessionId\": ")

    def test_harvest_path_metadata(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            home = Path(tmp)
            path = home / ".config" / "Code" / "User" / "workspaceStorage" / "5f1e9a" / "chatSessions" / "2b7c.json"

            meta = harvest_path_metadata(path, home=home)

        self.assertEqual(meta.workspaceId, "5f1e9a")
        self.assertEqual(meta.vscodeVariant, "stable")
        self.assertEqual(meta.sessionFileName, "2b7c.json")
        self.assertTrue(meta.isFromLocalUser)


if __name__ == "__main__":
    unittest.main()
