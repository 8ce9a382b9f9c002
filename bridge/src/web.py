# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""REST API over the PDU sessions' control surfaces — multi-PDU support."""

import collections
import copy
import json
import logging
import time

from aiohttp import web

from .pdu_model import STATUS_CODE_OK
from .session import PDUSession

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# RingBufferHandler: in-memory log capture for web viewer
# ---------------------------------------------------------------------------

class RingBufferHandler(logging.Handler):
    """Logging handler that stores records in a bounded deque for web access."""

    def __init__(self, capacity: int = 1000):
        super().__init__()
        self._records: collections.deque = collections.deque(maxlen=capacity)

    def emit(self, record):
        try:
            self._records.append({
                "ts": record.created,
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
            })
        except Exception:
            self.handleError(record)

    def get_records(self, level: str | None = None, limit: int = 200,
                    search: str | None = None) -> list[dict]:
        """Return filtered log records, newest first."""
        level_num = getattr(logging, level.upper(), 0) if level else 0
        results = []
        for rec in reversed(self._records):
            if level_num and getattr(logging, rec["level"], 0) < level_num:
                continue
            if search and search.lower() not in rec["message"].lower():
                continue
            results.append(rec)
            if len(results) >= limit:
                break
        return results


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response(status=204)
    else:
        resp = await handler(request)
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp


class WebServer:
    def __init__(self, port: int = 8080, mqtt=None, config=None):
        self._port = port
        self._mqtt = mqtt
        self._config = config  # Config object for settings persistence

        # Multi-PDU sessions: keyed by device_id
        self._sessions: dict[str, PDUSession] = {}

        # Log buffer (set via set_log_buffer)
        self._log_buffer: RingBufferHandler | None = None

        # System info (set via setters from main.py)
        self._bridge_version: str = "0.0.0"
        self._start_time: float = time.time()

        self._app = web.Application(middlewares=[cors_middleware])
        self._runner: web.AppRunner | None = None
        self._setup_routes()

    def set_log_buffer(self, handler: RingBufferHandler):
        self._log_buffer = handler

    def set_bridge_version(self, version: str):
        self._bridge_version = version

    def set_start_time(self, start_time: float):
        self._start_time = start_time

    def register_session(self, session: PDUSession):
        self._sessions[session.device_id] = session
        logger.info("Registered PDU %s with web API", session.device_id)

    def _setup_routes(self):
        r = self._app.router
        r.add_get("/api/pdus", self._handle_list_pdus)
        r.add_get("/api/pdus/{device_id}", self._handle_get_pdu)
        r.add_post("/api/pdus/{device_id}/connect", self._handle_connect)
        r.add_post("/api/pdus/{device_id}/disconnect", self._handle_disconnect)
        r.add_post("/api/pdus/{device_id}/outlets/{n}/{action}", self._handle_outlet)
        r.add_post("/api/pdus/{device_id}/groups/trigger", self._handle_group_trigger)
        r.add_post("/api/pdus/{device_id}/groups/{n}/{action}", self._handle_group)
        r.add_post("/api/pdus/{device_id}/confirm", self._handle_confirm)
        r.add_post("/api/pdus/{device_id}/cancel", self._handle_cancel)
        r.add_post("/api/pdus/{device_id}/reset", self._handle_reset)
        r.add_put("/api/pdus/{device_id}/mode", self._handle_set_mode)

        r.add_get("/api/health", self._handle_health)
        r.add_get("/api/config", self._handle_get_config)
        r.add_put("/api/config", self._handle_update_config)
        r.add_get("/api/system/logs", self._handle_system_logs)

    # --- Utility ---

    def _json(self, data, status=200):
        return web.Response(
            text=json.dumps(data),
            content_type="application/json",
            status=status,
        )

    def _session(self, request) -> PDUSession | None:
        return self._sessions.get(request.match_info["device_id"])

    def _not_found(self, request):
        return self._json(
            {"error": f"unknown PDU {request.match_info['device_id']!r}"}, 404
        )

    @staticmethod
    def _index(request) -> int | None:
        try:
            n = int(request.match_info["n"])
        except (KeyError, ValueError):
            return None
        return n if n >= 1 else None

    def _result(self, session: PDUSession, ok: bool):
        if ok:
            return self._json({"ok": True, "pdu": session.snapshot()})
        return self._json({"ok": False, "error": session.last_rejection}, 409)

    # --- PDUs ---

    async def _handle_list_pdus(self, request):
        """GET /api/pdus — summary of every PDU session."""
        pdus = []
        for did, s in self._sessions.items():
            pdus.append({
                "device_id": did,
                "config": s.pdu.public_dict(),
                "state": s.state,
                "status": s.controls.status,
                "status_code": s.controls.status_code,
                "connected": s.flags.connected,
                "authenticated": s.flags.authenticated,
            })
        return self._json({"pdus": pdus, "count": len(pdus)})

    async def _handle_get_pdu(self, request):
        """GET /api/pdus/{id} — full control-surface snapshot."""
        session = self._session(request)
        if session is None:
            return self._not_found(request)
        return self._json(session.snapshot())

    async def _handle_connect(self, request):
        session = self._session(request)
        if session is None:
            return self._not_found(request)
        if not session.pdu.host:
            return self._json({"ok": False, "error": "no host configured"}, 409)
        session.connect()
        return self._json({"ok": True, "state": session.state})

    async def _handle_disconnect(self, request):
        session = self._session(request)
        if session is None:
            return self._not_found(request)
        session.disconnect()
        return self._json({"ok": True, "state": session.state})

    # --- Outlets and groups ---

    async def _handle_outlet(self, request):
        """POST /api/pdus/{id}/outlets/{n}/toggle|cycle"""
        session = self._session(request)
        if session is None:
            return self._not_found(request)
        n = self._index(request)
        if n is None or session.controls.outlet(n) is None:
            return self._json({"error": "invalid outlet number"}, 400)
        action = request.match_info["action"]
        if action == "toggle":
            ok = session.press_outlet_toggle(n)
        elif action == "cycle":
            ok = session.press_outlet_cycle(n)
        else:
            return self._json({"error": f"unknown action {action!r}"}, 400)
        return self._result(session, ok)

    async def _handle_group(self, request):
        """POST /api/pdus/{id}/groups/{n}/toggle|cycle"""
        session = self._session(request)
        if session is None:
            return self._not_found(request)
        n = self._index(request)
        if n is None or session.controls.group(n) is None:
            return self._json({"error": "invalid group number"}, 400)
        action = request.match_info["action"]
        if action == "toggle":
            ok = session.press_group_toggle(n)
        elif action == "cycle":
            ok = session.press_group_cycle(n)
        else:
            return self._json({"error": f"unknown action {action!r}"}, 400)
        return self._result(session, ok)

    async def _handle_group_trigger(self, request):
        """POST /api/pdus/{id}/groups/trigger — {"name": "<group name>"}"""
        session = self._session(request)
        if session is None:
            return self._not_found(request)
        try:
            body = await request.json()
        except Exception:
            return self._json({"error": "invalid JSON body"}, 400)
        name = body.get("name") if isinstance(body, dict) else None
        if not isinstance(name, str) or not name.strip():
            return self._json({"error": "name is required"}, 400)
        return self._result(session, session.trigger_group_by_name(name))

    async def _handle_confirm(self, request):
        session = self._session(request)
        if session is None:
            return self._not_found(request)
        return self._result(session, session.confirm())

    async def _handle_cancel(self, request):
        session = self._session(request)
        if session is None:
            return self._not_found(request)
        return self._result(session, session.cancel())

    async def _handle_reset(self, request):
        session = self._session(request)
        if session is None:
            return self._not_found(request)
        return self._result(session, session.reset_operation_state())

    async def _handle_set_mode(self, request):
        """PUT /api/pdus/{id}/mode — {"mode": "on_off"|"cycle"}"""
        session = self._session(request)
        if session is None:
            return self._not_found(request)
        try:
            body = await request.json()
        except Exception:
            return self._json({"error": "invalid JSON body"}, 400)
        mode = body.get("mode") if isinstance(body, dict) else None
        if mode is None:
            return self._json({"error": "mode is required"}, 400)
        selected = bool(body.get("selected", True))
        if not session.select_mode(mode, selected):
            status = 400 if "unknown operation mode" in session.last_rejection else 409
            return self._json({"ok": False, "error": session.last_rejection}, status)
        return self._json({"ok": True, "mode": session.controls.mode.name.lower()})

    # --- Health / config / logs ---

    async def _handle_health(self, request):
        """Health check endpoint for Docker HEALTHCHECK and monitoring."""
        issues = []
        pdus = {}
        for did, s in self._sessions.items():
            pdus[did] = s.get_health()
            if s.controls.status_code != STATUS_CODE_OK:
                issues.append(f"[{did}] {s.controls.status}")

        subsystems = {
            "mqtt": self._mqtt.get_status() if self._mqtt else {"status": "unavailable"},
        }
        if self._mqtt and not self._mqtt.get_status().get("connected"):
            issues.append("MQTT disconnected")

        healthy = not issues and bool(self._sessions)
        result = {
            "status": "healthy" if healthy else "degraded",
            "issues": issues,
            "pdu_count": len(self._sessions),
            "version": self._bridge_version,
            "uptime_seconds": round(time.time() - self._start_time, 1),
            "subsystems": subsystems,
            "pdus": pdus,
        }
        return self._json(result, 200 if healthy else 503)

    async def _handle_get_config(self, request):
        """GET /api/config — saveable bridge settings."""
        cfg = self._config
        if not cfg:
            return self._json({"error": "config not available"}, 503)
        settings = cfg.settings_dict
        settings.pop("mqtt_password", None)
        settings["mqtt_has_password"] = bool(cfg.mqtt_password)
        settings["port"] = self._port
        settings["pdu_count"] = len(self._sessions)
        return self._json(settings)

    async def _handle_update_config(self, request):
        """PUT /api/config — update and persist bridge settings.

        Poll interval applies immediately; the rest take effect on restart.
        """
        try:
            body = await request.json()
        except Exception:
            return self._json({"error": "invalid JSON body"}, 400)
        if not isinstance(body, dict):
            return self._json({"error": "expected a JSON object"}, 400)

        cfg = self._config
        if not cfg:
            return self._json({"error": "config not available"}, 503)

        # Validate every field on a scratch copy before touching the live config
        staged = copy.copy(cfg)
        for field, value in body.items():
            try:
                staged.apply_setting(field, value)
            except (ValueError, TypeError) as e:
                return self._json({"error": f"{field}: {e}"}, 400)

        updated = {}
        for field, value in body.items():
            cfg.apply_setting(field, value)
            updated[field] = value

        if "poll_interval" in updated:
            for s in self._sessions.values():
                s.poller.poll_interval = cfg.poll_interval
        if "log_level" in updated:
            level = getattr(logging, str(cfg.log_level).upper(), None)
            if isinstance(level, int):
                logging.getLogger().setLevel(level)

        cfg.save_settings(cfg.settings_file)
        logger.info("Config updated via web API: %s", ", ".join(sorted(updated)))
        return self._json({"ok": True, "updated": sorted(updated)})

    async def _handle_system_logs(self, request):
        """GET /api/system/logs — retrieve log records from ring buffer."""
        if not self._log_buffer:
            return self._json({"error": "log buffer not available"}, 503)

        level = request.query.get("level")
        try:
            limit = min(int(request.query.get("limit", "200")), 1000)
        except ValueError:
            return self._json({"error": "limit must be an integer"}, 400)
        search = request.query.get("search")

        records = self._log_buffer.get_records(level=level, limit=limit, search=search)
        return self._json({"logs": records, "count": len(records)})

    async def start(self):
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self._port)
        await site.start()
        logger.info("Web API started on http://0.0.0.0:%d", self._port)

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()
