from __future__ import annotations

from chat_memory.retrieval import (
    MEMORY_HEADER,
    build_search_filter,
    format_memories,
    inject_memories,
    last_user_message,
    retention_cutoff,
)

BASE = 1_760_000_000_000


def _chat(n: int):
    return [{"mes": f"m{i}", "is_user": i % 2 == 0, "send_date": BASE + i * 1000} for i in range(n)]


def test_cutoff_is_timestamp_of_first_retained_message():
    chat = _chat(10)
    assert retention_cutoff(chat, 5) == BASE + 5 * 1000


def test_cutoff_normalizes_seconds():
    chat = _chat(10)
    chat[5]["send_date"] = (BASE + 5000) // 1000
    assert retention_cutoff(chat, 5) == BASE + 5000


def test_no_cutoff_when_nothing_to_exclude():
    assert retention_cutoff(_chat(10), 0) == 0
    assert retention_cutoff(_chat(5), 5) == 0
    assert retention_cutoff(_chat(3), 5) == 0


def test_no_cutoff_without_boundary_timestamp():
    chat = _chat(10)
    del chat[5]["send_date"]
    assert retention_cutoff(chat, 5) == 0


def test_search_filter():
    assert build_search_filter(0) is None
    assert build_search_filter(123) == {"must": [{"key": "timestamp", "range": {"lt": 123}}]}
    flt = build_search_filter(0, character_name="Alice", chat_id="c1")
    assert flt == {
        "must": [
            {"key": "character", "match": {"value": "Alice"}},
            {"key": "chatId", "match": {"value": "c1"}},
        ]
    }


def test_format_memories():
    memories = [
        {"id": "1", "score": 0.873, "payload": {"isChunk": True, "speakers": "Bob, Alice", "text": "[2025-10-20]\nBob: hi\nAlice: hello"}},
        {"id": "2", "score": 0.5, "payload": {"speaker": "user", "text": "old single"}},
        {"id": "3", "score": 0.4, "payload": {"speaker": "character", "text": "reply"}},
    ]
    out = format_memories(memories)
    assert out.startswith(MEMORY_HEADER)
    assert '• Conversation (Bob, Alice): "[2025-10-20] Bob: hi Alice: hello" (score: 87%)\n\n' in out
    assert '• You said: "old single" (score: 50%)' in out
    assert '• Character said: "reply" (score: 40%)' in out
    assert format_memories([]) == ""


def test_last_user_message():
    chat = [{"mes": "q1", "is_user": True}, {"mes": "a1", "is_user": False}, {"mes": "q2", "is_user": True}, {"mes": "a2", "is_user": False}]
    assert last_user_message(chat) == "q2"
    assert last_user_message([{"mes": "a", "is_user": False}]) is None


def test_inject_memories_position():
    chat = _chat(6)
    index = inject_memories(chat, "MEM", 2)
    assert index == 4
    assert chat[4]["mes"] == "MEM"
    assert chat[4]["is_system"] is True
    assert chat[4]["name"] == "System"
    assert len(chat) == 7


def test_inject_memories_clamps_to_start():
    chat = _chat(1)
    assert inject_memories(chat, "MEM", 5) == 0
    assert chat[0]["mes"] == "MEM"
