"""Wire payload builders for simulated collaborative-editing traffic.

Deterministic fields (ids, version, collaborator lists) depend only on the
user id and the message sequence number.  Style flags and edit positions are
drawn from the ``random.Random`` handed in by the caller, or from one seeded
with the call's own inputs, so scenarios stay reproducible.
"""

from __future__ import annotations

import enum
import hashlib
import json
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

COLORS = ("#000000", "#1f77b4", "#d62728", "#2ca02c", "#9467bd", "#8c564b")
FONT_SIZES = (10, 11, 12, 14, 16, 18, 24)
WORDS = (
    "sync", "note", "draft", "shared", "edit", "cursor", "merge", "review",
    "comment", "version", "paragraph", "insert", "delete", "document",
)


class PayloadMode(str, enum.Enum):
    STRUCTURAL = "structural"
    BULK = "bulk"
    SEQUENCE = "sequence"
    REQUEST = "request"


def message_id(user_id: str, seq: int) -> str:
    return f"{user_id}-{seq}"


def document_id(user_id: str) -> str:
    return f"doc-{user_id}"


def seeded_random(*parts: Any) -> random.Random:
    digest = hashlib.sha256("|".join(str(p) for p in parts).encode("utf-8")).digest()
    return random.Random(int.from_bytes(digest[:8], "big"))


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PayloadGenerator:
    paragraphs: int = 3
    changes_per_paragraph: int = 5
    collaborators: int = 5
    bulk_bytes: int = 10000
    bulk_edits: int = 100
    bulk_edit_bytes: int = 100

    def generate(self,
                 user_id: Any,
                 seq: int,
                 mode: PayloadMode | str = PayloadMode.STRUCTURAL,
                 rng: Optional[random.Random] = None) -> str:
        mode = PayloadMode(mode)
        if mode is PayloadMode.SEQUENCE:
            return str(seq)
        body = self.generate_dict(user_id, seq, mode, rng)
        return json.dumps(body, separators=(",", ":"))

    def generate_dict(self,
                      user_id: Any,
                      seq: int,
                      mode: PayloadMode | str = PayloadMode.STRUCTURAL,
                      rng: Optional[random.Random] = None) -> Dict[str, Any]:
        mode = PayloadMode(mode)
        user = str(user_id)
        if rng is None:
            rng = seeded_random(user, seq, mode.value)
        if mode is PayloadMode.STRUCTURAL:
            return self._structural(user, seq, rng)
        if mode is PayloadMode.BULK:
            return self._bulk(user, seq, rng)
        if mode is PayloadMode.REQUEST:
            return {"msg": message_id(user, seq), "code": seq}
        return {"messageId": str(seq)}

    def _structural(self, user: str, seq: int, rng: random.Random) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = []
        for index in range(max(0, self.paragraphs)):
            text = " ".join(WORDS[(seq + index + k) % len(WORDS)] for k in range(8))
            changes = []
            for change_idx in range(max(0, self.changes_per_paragraph)):
                changes.append({
                    "position": rng.randint(0, len(text)),
                    "insert": WORDS[(change_idx + index) % len(WORDS)],
                    "delete": rng.randint(0, 5),
                    "attributes": {"bold": rng.random() < 0.5},
                })
            content.append({
                "id": f"p-{seq}-{index}",
                "text": text,
                "styles": {
                    "fontSize": rng.choice(FONT_SIZES),
                    "color": rng.choice(COLORS),
                    "bold": rng.random() < 0.5,
                    "italic": rng.random() < 0.5,
                    "underline": rng.random() < 0.5,
                },
                "changes": changes,
            })
        team = [f"user-{n}" for n in range(max(0, self.collaborators))]
        return {
            "messageId": message_id(user, seq),
            "userId": user,
            "documentId": document_id(user),
            "timestamp": now_ms(),
            "type": "update",
            "content": content,
            "metadata": {
                "version": seq,
                "lastEditor": user,
                "collaborators": team,
                "permissions": {"readers": list(team), "editors": team[:2]},
            },
        }

    def _bulk(self, user: str, seq: int, rng: random.Random) -> Dict[str, Any]:
        size = max(0, self.bulk_bytes)
        edit_text = "B" * max(0, self.bulk_edit_bytes)
        return {
            "messageId": message_id(user, seq),
            "userId": user,
            "documentId": document_id(user),
            "timestamp": now_ms(),
            "content": "A" * size,
            "changes": [
                {"position": rng.randint(0, size), "text": edit_text}
                for _ in range(max(0, self.bulk_edits))
            ],
        }


def expected_response(msg: str, code: int) -> str:
    return f"{msg}: {code}"
