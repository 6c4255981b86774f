"""Maturador: message dispatch from one identity to the other over the channel."""

from __future__ import annotations

import logging
import re
from typing import Optional

from . import evolution_client
from . import runtime_config
from .errors import ChannelTransientError, IdentityUnresolvable
from .identity_resolver import Identity

logger = logging.getLogger("maturador.dispatcher")

_NON_DIGITS_RE = re.compile(r"\D")


def normalize_address(raw: Optional[str], identity_name: str = "") -> str:
    """Digits-only E.164 without '+'; Brazilian mobiles get their ninth digit.

    ``55`` + DDD + 8 digits becomes ``55`` + DDD + ``9`` + 8 digits. Anything
    shorter than 12 digits, or a ``55`` number shorter than 13, is rejected.
    """
    number = _NON_DIGITS_RE.sub("", raw or "")
    if number.startswith("55") and len(number) == 12:
        number = f"55{number[2:4]}9{number[4:]}"
    if len(number) < 12 or (number.startswith("55") and len(number) < 13):
        raise IdentityUnresolvable(
            f"Invalid phone number for {identity_name or 'identity'}; "
            "use country and area code (e.g. 55119XXXXXXXX).",
            {"identity": identity_name, "address": raw},
        )
    return number


async def send(from_identity: Identity, to_identity: Identity, text: str) -> dict:
    """Send `text` from `from_identity`'s instance to `to_identity`'s address.

    Raises IdentityUnresolvable, ChannelTransientError or ChannelFatalError.
    """
    if not from_identity.instance_ref:
        raise IdentityUnresolvable(
            f"Identity {from_identity.name} has no channel instance.",
            {"identity": from_identity.name},
        )
    if not to_identity.address:
        raise IdentityUnresolvable(
            f"Identity {to_identity.name} has no address.",
            {"identity": to_identity.name},
        )
    number = normalize_address(to_identity.address, to_identity.name)

    if runtime_config.CHECK_INSTANCE_STATE:
        connected = await evolution_client.instance_connected(from_identity.instance_ref)
        if not connected:
            raise ChannelTransientError(
                f"Instance {from_identity.instance_ref} is not connected.",
                {"instance": from_identity.instance_ref},
            )

    ack = await evolution_client.send_text(from_identity.instance_ref, number, text)
    logger.info(
        "Sent %d chars %s -> %s (%s)",
        len(text),
        from_identity.name,
        to_identity.name,
        ack.get("message_id") or "no id",
    )
    return ack
