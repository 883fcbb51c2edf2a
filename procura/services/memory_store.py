import re
import aiosqlite
from pathlib import Path
from typing import List, Dict, Any, Optional
from datetime import datetime, UTC

from pydantic import BaseModel, Field

from procura.core.types import MemoryChannel
from procura.exceptions import InfrastructureError

_TOKEN = re.compile(r"[a-z0-9$.]+")
RANK_CONSTANT = 60
RANK_WINDOW = 20


def _tokens(text: str) -> set[str]:
    return {token.strip(".") for token in _TOKEN.findall((text or "").lower()) if token.strip(".")}


class MemorySnippet(BaseModel):
    text: str
    tags: Dict[str, Optional[str]] = Field(default_factory=dict)
    score: float = 0.0
    created_at: Optional[str] = None


class MemoryStore:
    """
    Persistent snippet memory (Vector DB Lite).
    Snippets are tagged with run, counterparty and channel; retrieval fuses a
    lexical-overlap ranking and a recency ranking with reciprocal-rank fusion.
    """
    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False

    async def _ensure_initialized(self):
        if self._initialized: return
        async with aiosqlite.connect(self.db_path) as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS campaign_memory (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    content TEXT,
                    run_id TEXT,
                    counterparty_id TEXT,
                    channel TEXT,
                    keywords TEXT,
                    created_at DATETIME
                )
            """)
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_memory_run ON campaign_memory(run_id)")
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_memory_counterparty ON campaign_memory(counterparty_id)")
            await conn.commit()
        self._initialized = True

    async def write(
        self,
        text: str,
        *,
        run_id: str,
        counterparty_id: Optional[str] = None,
        channel: MemoryChannel | str = MemoryChannel.NOTE,
    ) -> None:
        """Stores a new snippet."""
        channel = MemoryChannel(channel)
        keywords = " ".join(sorted(_tokens(text)))
        try:
            await self._ensure_initialized()
            async with aiosqlite.connect(self.db_path) as conn:
                await conn.execute(
                    """INSERT INTO campaign_memory (content, run_id, counterparty_id, channel, keywords, created_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (text, run_id, counterparty_id, channel.value, keywords, datetime.now(UTC).isoformat()),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise InfrastructureError(f"memory write failed: {exc}") from exc

    async def retrieve(
        self,
        query: str,
        *,
        counterparty_id: Optional[str] = None,
        run_id: Optional[str] = None,
        limit: int = 5,
    ) -> List[MemorySnippet]:
        """Top-K snippets matching the filters, ranked by fused lexical + recency rank."""
        clauses = []
        params: List[Any] = []
        if counterparty_id:
            clauses.append("counterparty_id = ?")
            params.append(counterparty_id)
        if run_id:
            clauses.append("run_id = ?")
            params.append(run_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        try:
            await self._ensure_initialized()
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                # Use id for tie-breaking on same timestamp
                cursor = await conn.execute(
                    f"SELECT * FROM campaign_memory {where} ORDER BY created_at DESC, id DESC",
                    tuple(params),
                )
                rows = [dict(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as exc:
            raise InfrastructureError(f"memory retrieve failed: {exc}") from exc

        query_words = _tokens(query)
        recency_ranked = rows[:RANK_WINDOW]
        lexical_scored = []
        for row in rows:
            overlap = len(query_words.intersection((row["keywords"] or "").split()))
            if overlap > 0:
                lexical_scored.append((overlap, row["id"], row))
        lexical_scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        lexical_ranked = [row for _, _, row in lexical_scored[:RANK_WINDOW]]

        fused: Dict[int, float] = {}
        by_id: Dict[int, Dict[str, Any]] = {}
        for ranking in (lexical_ranked, recency_ranked):
            for rank, row in enumerate(ranking, start=1):
                fused[row["id"]] = fused.get(row["id"], 0.0) + 1.0 / (RANK_CONSTANT + rank)
                by_id[row["id"]] = row

        ordered = sorted(fused.items(), key=lambda item: (item[1], item[0]), reverse=True)
        return [
            MemorySnippet(
                text=by_id[row_id]["content"],
                tags={
                    "run_id": by_id[row_id]["run_id"],
                    "counterparty_id": by_id[row_id]["counterparty_id"],
                    "channel": by_id[row_id]["channel"],
                },
                score=round(score, 6),
                created_at=by_id[row_id]["created_at"],
            )
            for row_id, score in ordered[:limit]
        ]

    async def count(self, run_id: Optional[str] = None) -> int:
        await self._ensure_initialized()
        async with aiosqlite.connect(self.db_path) as conn:
            if run_id:
                cursor = await conn.execute("SELECT COUNT(*) FROM campaign_memory WHERE run_id = ?", (run_id,))
            else:
                cursor = await conn.execute("SELECT COUNT(*) FROM campaign_memory")
            row = await cursor.fetchone()
            return int(row[0]) if row else 0
