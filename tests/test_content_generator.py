import asyncio
import uuid

import pytest

from maturador import content_generator as gen
from maturador import database as db
from maturador import openai_client
from maturador import runtime_config
from maturador.errors import MissingBehavior, ScriptExhausted
from maturador.identity_resolver import Identity


def _run(coro):
    return asyncio.run(coro)


def _speaker(prompt="Você é a Ana.", script_id=None):
    return Identity(
        name="Ana",
        address="5511912345678",
        instance_ref="inst-ana",
        prompt=prompt,
        script_id=script_id,
    )


def _scripted_pair(script_id: str, loop: bool) -> dict:
    return {
        "id": f"pair-{uuid.uuid4().hex[:6]}",
        "turn_counter": 3,
        "scheduling_mode": "scripted",
        "script_id": script_id,
        "script_cursor": 0,
        "script_loop": loop,
        "script_exhausted": False,
    }


def test_truncate_reply_keeps_two_lines():
    assert gen.truncate_reply("linha 1\nlinha 2\nlinha 3") == "linha 1\nlinha 2"


def test_truncate_reply_keeps_only_first_speech():
    assert gen.truncate_reply("oi, tudo bem?\n\nBia: tudo sim") == "oi, tudo bem?"
    assert gen.truncate_reply("oi, tudo bem?\nBia: tudo sim") == "oi, tudo bem?"


def test_truncate_reply_strips_annotations_and_caps_length():
    cleaned = gen.truncate_reply("bora (delay 30s) 12/05/2024 10:30 sim")
    assert "delay" not in cleaned
    assert "12/05/2024" not in cleaned
    assert len(gen.truncate_reply("a" * 400)) == runtime_config.MAX_REPLY_CHARS


def test_strip_speaker_prefix_removes_name_labels():
    assert gen.strip_speaker_prefix("Ana: oi sumida", "Ana") == "oi sumida"
    assert gen.strip_speaker_prefix("Bia: e aí", "Ana") == "e aí"
    assert gen.strip_speaker_prefix("kkk verdade", "Ana") == "kkk verdade"


def test_history_is_bounded_and_mapped_to_roles():
    history = [
        {"from_member": "Ana" if i % 2 == 0 else "Bia", "content": f"msg {i}"}
        for i in range(25)
    ]
    mapped = gen.history_messages(history, "Ana")
    assert len(mapped) == 20
    assert mapped[-1] == {"role": "assistant", "content": "msg 24"}
    assert mapped[-2] == {"role": "user", "content": "msg 23"}


def test_scripted_cursor_wraps_when_looping():
    script_id = f"script-{uuid.uuid4().hex[:6]}"

    async def scenario():
        await db.upsert_script(script_id, "Saudações", ["m0", {"text": "m1"}, "m2"])
        pair = _scripted_pair(script_id, loop=True)
        texts = []
        for _ in range(5):
            turn = await gen.generate(pair, _speaker(), [])
            texts.append(turn.text)
            assert turn.source == "scripted"
            pair["script_cursor"] = turn.next_cursor
        return texts

    assert _run(scenario()) == ["m0", "m1", "m2", "m0", "m1"]


def test_scripted_without_loop_is_exhausted_past_the_end():
    script_id = f"script-{uuid.uuid4().hex[:6]}"

    async def scenario():
        await db.upsert_script(script_id, "Curto", ["um", "dois"])
        pair = _scripted_pair(script_id, loop=False)
        texts = []
        for _ in range(2):
            turn = await gen.generate(pair, _speaker(), [])
            texts.append(turn.text)
            pair["script_cursor"] = turn.next_cursor
        assert texts == ["um", "dois"]
        with pytest.raises(ScriptExhausted):
            await gen.generate(pair, _speaker(), [])

    _run(scenario())


def test_scripted_without_script_is_a_configuration_error():
    pair = _scripted_pair(None, loop=True)
    with pytest.raises(MissingBehavior):
        _run(gen.generate(pair, _speaker(), []))


def test_generated_without_prompt_is_a_configuration_error():
    pair = {"id": "p", "turn_counter": 2, "scheduling_mode": "generated"}
    with pytest.raises(MissingBehavior):
        _run(gen.generate(pair, _speaker(prompt=None), []))


def test_generated_reply_is_cleaned(monkeypatch):
    seen = {}

    async def fake_complete(prompt, history, **kwargs):
        seen["prompt"] = prompt
        seen["history"] = history
        return {
            "text": "Ana: kkk sim\nbora marcar\ne depois?\nBia: fechou",
            "model": "gpt-4o-mini",
            "usage": {"prompt_tokens": 40, "completion_tokens": 12},
        }

    monkeypatch.setattr(openai_client, "complete", fake_complete)
    pair = {"id": "p", "turn_counter": 4, "scheduling_mode": "generated"}
    history = [{"from_member": "Bia", "content": "vamos sair?"}]

    turn = _run(gen.generate(pair, _speaker(), history))
    assert turn.text == "kkk sim\nbora marcar"
    assert turn.source == "generated"
    assert turn.model == "gpt-4o-mini"
    assert turn.usage["completion_tokens"] == 12
    assert seen["history"] == [{"role": "user", "content": "vamos sair?"}]


def test_first_turn_is_an_announcement_in_any_mode(monkeypatch):
    monkeypatch.setattr(runtime_config, "FIRST_TURN_TEMPLATE", "🔄 Maturando desde: {started_at}")
    monkeypatch.setattr(runtime_config, "DISPLAY_TIMEZONE", "America/Sao_Paulo")

    async def boom(*args, **kwargs):
        raise AssertionError("completion must not be called on the first turn")

    monkeypatch.setattr(openai_client, "complete", boom)
    pair = {
        "id": "p",
        "turn_counter": 0,
        "scheduling_mode": "scripted",
        "script_id": "unused",
        "script_cursor": 0,
        "started_at": "2024-05-12T10:30:00+00:00",
    }
    turn = _run(gen.generate(pair, _speaker(), []))
    assert turn.source == "announcement"
    assert turn.text == "🔄 Maturando desde: 12/05/2024 07:30"
    assert turn.next_cursor is None


def test_fallback_phrase_comes_from_configured_list():
    for _ in range(20):
        assert gen.fallback_phrase() in runtime_config.FALLBACK_PHRASES


def test_started_at_is_shown_in_the_display_timezone(monkeypatch):
    monkeypatch.setattr(runtime_config, "DISPLAY_TIMEZONE", "America/Sao_Paulo")
    assert gen.format_started_at("2024-05-12T01:15:00+00:00") == "11/05/2024 22:15"
    # Naive stamps are stored UTC.
    assert gen.format_started_at("2024-05-12T01:15:00") == "11/05/2024 22:15"

    monkeypatch.setattr(runtime_config, "DISPLAY_TIMEZONE", "Nowhere/Invalid")
    assert gen.format_started_at("2024-05-12T01:15:00+00:00") == "12/05/2024 01:15"
