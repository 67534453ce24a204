"""
websocket.py — WebSocket manager and broadcast for TrailTiming.

Protocol:
- Server → Client: passage, standings, highlight
- Client → Server: subscribe (channel selection)

Single endpoint: ws://{host}:8080/ws
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from core.models import Passage, RankedResult, RaceStats
from core.stats import compute_stats

logger = logging.getLogger("trailtiming.ws")

router = APIRouter()

CLOSE_FINISH_MS = 2000


class ConnectionManager:
    """Manages WebSocket connections and message broadcasting."""

    def __init__(self):
        self.active: list[WebSocket] = []

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self.active.append(ws)
        logger.info("WS connected (%d total)", len(self.active))

    def disconnect(self, ws: WebSocket):
        if ws in self.active:
            self.active.remove(ws)
        logger.info("WS disconnected (%d total)", len(self.active))

    async def broadcast(self, message: dict):
        """Send message to all connected clients."""
        if not self.active:
            return
        data = json.dumps(message, ensure_ascii=False)
        disconnected = []
        for ws in self.active:
            try:
                await ws.send_text(data)
            except Exception:
                disconnected.append(ws)
        for ws in disconnected:
            self.disconnect(ws)

    async def broadcast_passage(self, race_id: str, passage: Passage):
        msg = {
            "type": "passage",
            "race_id": race_id,
            "passage_id": passage.id,
            "bib": passage.bib,
            "checkpoint_id": passage.checkpoint_id,
            "checkpoint_name": passage.checkpoint_name,
            "timestamp": passage.timestamp,
            "net_time": passage.net_time,
        }
        await self.broadcast(msg)

    async def broadcast_standings(self, race_id: str,
                                  results: list[RankedResult],
                                  stats: Optional[RaceStats] = None):
        """Broadcast the full recomputed leaderboard for a race."""
        if stats is None:
            stats = compute_stats(results)
        msg = {
            "type": "standings",
            "race_id": race_id,
            "stats": asdict(stats),
            "standings": [r.to_dict() for r in results],
        }
        await self.broadcast(msg)

    async def broadcast_highlight(self, race_id: str, category: str,
                                  text: str, bib: str,
                                  priority: str = "normal"):
        """Broadcast auto-generated speaker highlight."""
        msg = {
            "type": "highlight",
            "race_id": race_id,
            "category": category,
            "text": text,
            "bib": bib,
            "priority": priority,
        }
        await self.broadcast(msg)

    @property
    def connection_count(self) -> int:
        return len(self.active)


# Singleton manager
manager = ConnectionManager()


# ─── Highlight generation ─────────────────────────────────────────────

def generate_highlights(results: list[RankedResult],
                        participant_id: str) -> list[dict]:
    """Speaker highlights for one runner after their finish was recorded.

    Returns list of highlight dicts (category, text, bib, priority).
    """
    highlights = []

    runner = next((r for r in results if r.id == participant_id), None)
    if runner is None or runner.progress < 100:
        return highlights

    name = f"{runner.first_name[:1]}.{runner.last_name}"
    finishers = [r for r in results if r.progress == 100]

    if runner.rank == 1:
        if len(finishers) > 1:
            highlights.append({
                "category": "new_leader",
                "text": f"#{runner.bib} {name} prend la tête en {runner.display_time.split('.')[0]} !",
                "bib": runner.bib,
                "priority": "high",
            })
    elif results:
        leader = results[0]
        if leader.progress == 100 and leader.net_time_ms > 0:
            diff = runner.net_time_ms - leader.net_time_ms
            if 0 < diff <= CLOSE_FINISH_MS:
                highlights.append({
                    "category": "close_finish",
                    "text": f"#{runner.bib} {name} à {diff / 1000:.1f}s du leader !",
                    "bib": runner.bib,
                    "priority": "high",
                })

    if runner.rank <= 3:
        highlights.append({
            "category": "podium",
            "text": f"#{runner.bib} {name} est {runner.rank}e au scratch",
            "bib": runner.bib,
            "priority": "normal",
        })

    if runner.rank_category == 1 and runner.rank > 1:
        highlights.append({
            "category": "category_leader",
            "text": f"#{runner.bib} {name} mène la catégorie {runner.category}",
            "bib": runner.bib,
            "priority": "normal",
        })

    return highlights


# ─── WebSocket endpoint ───────────────────────────────────────────────

@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await manager.connect(ws)
    try:
        while True:
            data = await ws.receive_text()
            # Subscribe messages are logged only; every client gets every channel
            try:
                msg = json.loads(data)
                if msg.get("type") == "subscribe":
                    logger.debug("WS subscribe: %s", msg.get("channels"))
            except json.JSONDecodeError:
                pass
    except WebSocketDisconnect:
        manager.disconnect(ws)
