from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.requests import Request
from starlette.responses import Response

from voiptap.config_loader import AppConfig, load_config
from voiptap.logging_setup import correlation_context, short_uuid
from voiptap.services.addresses import address_to_display
from voiptap.services.call_columns import Column
from voiptap.services.calls_session import VoipCallsSession
from voiptap.services.sip_feed import replay_pcap

LOGGER = logging.getLogger(__name__)


class LoadRequest(BaseModel):
    pcap_path: str
    all_flows: Optional[bool] = None


class SelectionRequest(BaseModel):
    call_ids: List[int] = Field(default_factory=list)


def _load_app_config() -> AppConfig:
    raw = os.environ.get("VOIPTAP_CONFIG", "").strip()
    if not raw:
        return AppConfig()
    return load_config(Path(raw).expanduser())


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    config = config or AppConfig()
    app = FastAPI(title="VoIP Calls")
    app.state.config = config
    app.state.session = VoipCallsSession(config)

    def current_session() -> VoipCallsSession:
        return app.state.session

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        request_cid = request.headers.get("X-Correlation-Id") or short_uuid()
        start_ts = time.perf_counter()
        with correlation_context(request_cid):
            response: Response = await call_next(request)
            elapsed_ms = int((time.perf_counter() - start_ts) * 1000)
            LOGGER.info(
                "HTTP %s %s status=%s duration_ms=%s",
                request.method,
                request.url.path,
                response.status_code,
                elapsed_ms,
                extra={"category": "PERF"},
            )
            response.headers["X-Correlation-Id"] = request_cid
            return response

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        LOGGER.warning(
            "HTTP exception method=%s path=%s status=%s detail=%s",
            request.method,
            request.url.path,
            exc.status_code,
            exc.detail,
            extra={"category": "ERRORS"},
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.get("/api/health")
    def health() -> Dict[str, Any]:
        session = current_session()
        return {
            "status": "ok",
            "session_id": session.session_id,
            "title": session.title,
            "calls": len(session.store),
            "closed": session.closed,
        }

    @app.post("/api/session/load")
    def load_session(req: LoadRequest) -> Dict[str, Any]:
        pcap_path = Path(req.pcap_path).expanduser()
        previous = current_session()
        session = VoipCallsSession(app.state.config, all_flows=req.all_flows)
        try:
            accepted = replay_pcap(session, pcap_path)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        previous.close()
        app.state.session = session
        return {
            "session_id": session.session_id,
            "title": session.title,
            "events": accepted,
            "calls": len(session.store),
            "malformed_events": session.tap.malformed_events,
        }

    @app.post("/api/session/close")
    def close_session() -> Dict[str, Any]:
        session = current_session()
        session.close()
        return {"session_id": session.session_id, "closed": True}

    @app.get("/api/calls")
    def list_calls(
        sort: Optional[str] = Query(default=None),
        descending: bool = Query(default=False),
    ) -> Dict[str, Any]:
        session = current_session()
        if sort is not None:
            try:
                column = Column(sort)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f"Unknown sort column: {sort}") from exc
            session.table.sort_by(column, descending)
        return {"title": session.title, "calls": session.table.as_dicts()}

    @app.post("/api/calls/{call_id}/activate")
    def activate_call(call_id: int) -> Dict[str, Any]:
        frame_number = current_session().activate(call_id)
        if frame_number is None:
            raise HTTPException(status_code=404, detail="Call not found")
        return {"call_id": call_id, "frame_number": frame_number}

    @app.post("/api/filter")
    def prepare_filter(req: SelectionRequest) -> Dict[str, Any]:
        return {"filter": current_session().prepare_filter(req.call_ids)}

    @app.post("/api/sequence")
    def show_sequence(req: SelectionRequest) -> Dict[str, Any]:
        session = current_session()
        handoff = session.show_sequence(req.call_ids)
        if handoff is None:
            return {"analysis_type": session.sequence.analysis_type, "events": []}
        return {
            "analysis_type": handoff.analysis_type,
            "events": [
                {
                    "conv_id": item.conv_id,
                    "frame_number": item.frame_number,
                    "rel_ts": item.rel_ts,
                    "src": address_to_display(item.src),
                    "dst": address_to_display(item.dst),
                    "frame_label": item.frame_label,
                    "comment": item.comment,
                }
                for item in handoff.index.visible()
            ],
        }

    return app


app = create_app(_load_app_config())
