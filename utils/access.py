"""
Access policy — which senders and groups the bot talks to.

Empty allow-lists mean "no restriction", matching how the bot behaves when
ADMIN_NUMBERS / ALLOWED_GROUPS are unset.
"""
from __future__ import annotations

import re

from config.settings import SecurityConfig
from models.schemas import InboundMessage


def normalize_phone(phone: str) -> str:
    """Digits only: strips +, spaces, dashes and WhatsApp id suffixes."""
    return re.sub(r"[^\d]", "", phone.split("@", 1)[0])


def parse_phone_numbers(numbers: list[str], default_country_code: str = "62") -> list[str]:
    """Normalize configured numbers, prefixing the country code where missing."""
    parsed = []
    for raw in numbers:
        num = raw.strip()
        if not num:
            continue
        if not num.startswith("+") and not num.startswith(default_country_code):
            num = default_country_code + num.lstrip("0")
        parsed.append(normalize_phone(num))
    return parsed


class AccessPolicy:

    def __init__(self, config: SecurityConfig):
        self._admins = set(parse_phone_numbers(config.admin_numbers, config.default_country_code))
        self._groups = {g.strip() for g in config.allowed_groups if g.strip()}

    def is_authorized_user(self, phone: str) -> bool:
        if not self._admins:
            return True
        return normalize_phone(phone) in self._admins

    def is_authorized_group(self, group_id: str) -> bool:
        if not self._groups:
            return True
        return group_id in self._groups

    def should_handle(self, message: InboundMessage) -> bool:
        """Own messages are never handled; groups and users are checked separately."""
        if message.from_me:
            return False
        if message.is_group:
            return self.is_authorized_group(message.chat_id)
        return self.is_authorized_user(message.sender or message.chat_id)
