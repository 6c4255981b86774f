import asyncio
import time

from maturador import content_generator
from maturador import database as db
from maturador import evolution_client
from maturador import reply_listener
from maturador import runtime_config
from maturador.loop_driver import scheduler

from helpers.temp_db import seed_pair


def _run(coro):
    return asyncio.run(coro)


def _upsert_event(instance: str, sender_phone: str, from_me: bool = False) -> dict:
    return {
        "event": "messages.upsert",
        "instance": instance,
        "data": {
            "key": {
                "remoteJid": f"{sender_phone}@s.whatsapp.net",
                "fromMe": from_me,
                "id": "ABC",
            },
            "message": {"conversation": "oi"},
        },
    }


async def _seed_waiting_pair() -> dict:
    pair = await seed_pair()
    await db.commit_turn(pair["id"], 0, last_sender=pair["member_a"])
    return await db.get_pair(pair["id"])


def test_reply_from_other_member_releases_waiting_pair():
    async def scenario():
        pair = await _seed_waiting_pair()
        result = await reply_listener.on_inbound_message(
            _upsert_event(f"inst-{pair['member_b']}", "5511912345678")
        )
        return pair, result, await db.get_pair(pair["id"])

    pair, result, stored = _run(scenario())
    assert result["status"] == "released"
    assert result["receiver"] == pair["member_b"]
    assert [r["pair_id"] for r in result["released"]] == [pair["id"]]
    assert stored["waiting_response"] is False
    # The counter is untouched; the listener only shortens the wait.
    assert stored["turn_counter"] == 1


def test_outbound_and_unrelated_events_are_ignored():
    async def scenario():
        pair = await _seed_waiting_pair()
        instance = f"inst-{pair['member_b']}"
        outbound = await reply_listener.on_inbound_message(
            _upsert_event(instance, "5511912345678", from_me=True)
        )
        status_event = await reply_listener.on_inbound_message({"event": "connection.update", "instance": instance})
        unknown = await reply_listener.on_inbound_message(_upsert_event("inst-nobody", "5511912345678"))
        stranger = await reply_listener.on_inbound_message(_upsert_event(instance, "5521999990000"))
        wrong_side = await reply_listener.on_inbound_message(
            _upsert_event(f"inst-{pair['member_a']}", "5511987654321")
        )
        return outbound, status_event, unknown, stranger, wrong_side, await db.get_pair(pair["id"])

    outbound, status_event, unknown, stranger, wrong_side, stored = _run(scenario())
    assert outbound["reason"] == "outbound"
    assert status_event["reason"] == "event"
    assert unknown["reason"] == "unknown_instance"
    assert stranger["status"] == "ignored"
    # A received nothing it was waiting for: A itself spoke last.
    assert wrong_side["status"] == "ignored"
    assert stored["waiting_response"] is True


def test_upper_case_event_names_are_accepted():
    async def scenario():
        pair = await _seed_waiting_pair()
        event = _upsert_event(f"inst-{pair['member_b']}", "5511912345678")
        event["event"] = "MESSAGES_UPSERT"
        return await reply_listener.on_inbound_message(event)

    assert _run(scenario())["status"] == "released"


def test_reply_shortens_the_wait_but_never_below_the_minimum_turn_delay(monkeypatch):
    monkeypatch.setattr(runtime_config, "TURN_DELAY_MIN_SECONDS", 0.4)
    monkeypatch.setattr(runtime_config, "TURN_DELAY_MAX_SECONDS", 5.0)
    send_times: list[float] = []

    async def fake_generate(pair, speaker, history):
        return content_generator.GeneratedTurn(text=f"oi de {speaker.name}", source="generated")

    async def fake_send_text(instance, number, text):
        send_times.append(time.monotonic())
        return {"ok": True, "message_id": "m"}

    monkeypatch.setattr(content_generator, "generate", fake_generate)
    monkeypatch.setattr(evolution_client, "send_text", fake_send_text)

    async def scenario():
        pair = await seed_pair()
        scheduler.ensure_running(pair["id"])

        async def turns_at_least(n):
            started = time.time()
            while time.time() - started < 4:
                if len(await db.get_turns(pair["id"])) >= n:
                    return True
                await asyncio.sleep(0.01)
            return False

        assert await turns_at_least(1)
        # The gateway echoes A's own turn to B's instance as an inbound message.
        result = await reply_listener.on_inbound_message(
            _upsert_event(f"inst-{pair['member_b']}", "5511912345678")
        )
        assert await turns_at_least(2)
        await scheduler.shutdown()
        return pair, result, await db.get_turns(pair["id"])

    pair, result, turns = _run(scenario())
    assert result["released"][0]["nudged"] is True
    gap = send_times[1] - send_times[0]
    assert gap >= 0.4
    assert gap < 3
    assert [t["from_member"] for t in turns[:2]] == [pair["member_a"], pair["member_b"]]
