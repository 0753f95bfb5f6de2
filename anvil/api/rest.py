"""REST API for the Anvil agent.

Endpoints:
  POST   /chat                                   - Send a message, run the phase loop
  POST   /chat/{session_id}/continue             - Resume after approvals are resolved
  GET    /sessions                               - Stored session summaries
  GET    /sessions/{session_id}                  - Phase, plan, context and usage status
  DELETE /sessions/{session_id}                  - Delete a session
  POST   /sessions/{session_id}/reset            - Clear context + lifecycle
  PUT    /sessions/{session_id}/teaching         - Set teaching mode
  GET    /sessions/{session_id}/approvals        - Approval items
  POST   /sessions/{session_id}/approvals/{id}/approve - Approve and run a tool call
  POST   /sessions/{session_id}/approvals/{id}/reject  - Reject a tool call
  GET    /sessions/{session_id}/changes          - Staged change preview + history
  POST   /sessions/{session_id}/changes/rollback - Roll back the last applied change set
  GET    /health                                 - Health check
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from anvil.agent.approval import ApprovalAlreadyResolvedError, ApprovalNotFoundError
from anvil.agent.changes import ChangeSetError
from anvil.agent.orchestrator import LoopExhaustedError, ModelServiceError, PendingApprovalsError
from anvil.agent.teaching import TeachingMode
from anvil.api.sessions import SessionHandle, SessionPool
from anvil.config import Settings
from anvil.storage.sessions import SessionNotFoundError

logger = logging.getLogger(__name__)


async def _json_body(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def create_app(
    pool: SessionPool,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def _handle(request: Request) -> SessionHandle | JSONResponse:
        session_id = request.path_params["session_id"]
        try:
            return await pool.get(session_id)
        except SessionNotFoundError:
            return JSONResponse({"error": f"Session {session_id} not found"}, status_code=404)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

    async def _run_turn(handle: SessionHandle, call) -> JSONResponse:
        """Run a process/continue call under the session lock and persist."""
        orchestrator = handle.orchestrator
        context = orchestrator.context
        async with handle.lock:
            size_before = context.size()
            pruned_before = context.get_pruned_count()
            try:
                response = await call(orchestrator)
            except PendingApprovalsError as e:
                return JSONResponse({"error": str(e), "session_id": handle.id}, status_code=409)
            except ModelServiceError as e:
                partial = e.response
                ran_tools = partial is not None and bool(partial.tool_results)
                if not ran_tools and context.get_pruned_count() == pruned_before:
                    # Undo the turn so a retry does not duplicate the user message
                    context.remove_last_n(context.size() - size_before)
                pool.persist(handle)
                logger.error("Model error in session %s: %s", handle.id, e)
                return JSONResponse(
                    {"error": str(e), "error_type": str(e.error_type), "session_id": handle.id},
                    status_code=502,
                )
            except LoopExhaustedError as e:
                pool.persist(handle)
                logger.error("Loop exhausted in session %s: %s", handle.id, e)
                result: dict[str, Any] = {"error": str(e), "session_id": handle.id}
                if e.response is not None:
                    result["response"] = e.response.to_dict()
                return JSONResponse(result, status_code=500)
            pool.persist(handle)
        return JSONResponse({"session_id": handle.id, **response.to_dict()})

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Send a message, get a response."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        message = body.get("message")
        if not message or not isinstance(message, str):
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)

        try:
            handle = await pool.get_or_create(body.get("session_id"))
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        return await _run_turn(handle, lambda orch: orch.process_request(message))

    async def continue_chat(request: Request) -> JSONResponse:
        """POST /chat/{session_id}/continue - Resume a suspended request."""
        handle = await _handle(request)
        if isinstance(handle, JSONResponse):
            return handle
        return await _run_turn(handle, lambda orch: orch.continue_after_approval())

    async def list_sessions(request: Request) -> JSONResponse:
        """GET /sessions - Stored session summaries, most recent first."""
        if pool.store is None:
            return JSONResponse({"sessions": []})
        query = request.query_params.get("q")
        if query:
            sessions = [
                {"id": s.id, "name": s.name, "preview": s.preview()}
                for s in pool.store.search(query)
            ]
        else:
            sessions = [s.model_dump(mode="json") for s in pool.store.list_summaries()]
        return JSONResponse({"sessions": sessions})

    async def session_status(request: Request) -> JSONResponse:
        """GET /sessions/{session_id} - Session status overview."""
        handle = await _handle(request)
        if isinstance(handle, JSONResponse):
            return handle
        orch = handle.orchestrator
        lifecycle = orch.lifecycle
        stats = orch.token_tracker.get_stats()
        current = orch.changes.get_current_change_set() if orch.changes else None
        return JSONResponse({
            "session_id": handle.id,
            "phase": str(lifecycle.current_phase()),
            "plan": [s.to_dict() for s in lifecycle.get_plan()],
            "progress": lifecycle.progress(),
            "context": orch.context.stats().to_dict(),
            "pruned_summary": orch.context.get_pruned_summary(),
            "pending_approvals": orch.approvals.pending_count(),
            "teaching_mode": str(orch.teaching_config.mode),
            "usage": {
                **stats.to_dict(),
                "estimated_cost": round(stats.estimated_cost(settings.model), 6),
            },
            "open_change_set": current.summary() if current else None,
        })

    async def delete_session(request: Request) -> JSONResponse:
        """DELETE /sessions/{session_id} - Drop a session."""
        session_id = request.path_params["session_id"]
        try:
            await pool.remove(session_id)
        except SessionNotFoundError:
            return JSONResponse({"error": f"Session {session_id} not found"}, status_code=404)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse({"status": "deleted", "session_id": session_id})

    async def reset_session(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/reset - Clear context and lifecycle."""
        handle = await _handle(request)
        if isinstance(handle, JSONResponse):
            return handle
        async with handle.lock:
            handle.orchestrator.reset()
            pool.persist(handle)
        return JSONResponse({"status": "reset", "session_id": handle.id})

    async def set_teaching(request: Request) -> JSONResponse:
        """PUT /sessions/{session_id}/teaching - {"mode": "off|basic|detailed|expert"}."""
        handle = await _handle(request)
        if isinstance(handle, JSONResponse):
            return handle
        body = await _json_body(request)
        mode = (body or {}).get("mode")
        if mode not in {m.value for m in TeachingMode}:
            valid = ", ".join(m.value for m in TeachingMode)
            return JSONResponse({"error": f"Invalid mode. Valid: {valid}"}, status_code=400)
        handle.orchestrator.set_teaching_mode(TeachingMode(mode))
        return JSONResponse({"status": "updated", "mode": mode})

    async def list_approvals(request: Request) -> JSONResponse:
        """GET /sessions/{session_id}/approvals - All approval items in order."""
        handle = await _handle(request)
        if isinstance(handle, JSONResponse):
            return handle
        approvals = handle.orchestrator.approvals
        return JSONResponse({
            "approvals": [a.to_dict() for a in approvals.get_all()],
            "pending_count": approvals.pending_count(),
        })

    async def approve(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/approvals/{approval_id}/approve."""
        handle = await _handle(request)
        if isinstance(handle, JSONResponse):
            return handle
        approval_id = request.path_params["approval_id"]
        async with handle.lock:
            try:
                result = await handle.orchestrator.approve_tool_call(approval_id)
            except ApprovalNotFoundError as e:
                return JSONResponse({"error": str(e)}, status_code=404)
            except ApprovalAlreadyResolvedError as e:
                return JSONResponse({"error": str(e)}, status_code=409)
            pool.persist(handle)
        return JSONResponse({
            "approval_id": approval_id,
            "status": "approved",
            "result": result.model_dump(mode="json"),
            "pending_count": handle.orchestrator.approvals.pending_count(),
        })

    async def reject(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/approvals/{approval_id}/reject - {"reason": "..."}."""
        handle = await _handle(request)
        if isinstance(handle, JSONResponse):
            return handle
        approval_id = request.path_params["approval_id"]
        body = await _json_body(request) or {}
        reason = body.get("reason") or ""
        async with handle.lock:
            try:
                item = await handle.orchestrator.reject_tool_call(approval_id, reason)
            except ApprovalNotFoundError as e:
                return JSONResponse({"error": str(e)}, status_code=404)
            except ApprovalAlreadyResolvedError as e:
                return JSONResponse({"error": str(e)}, status_code=409)
            pool.persist(handle)
        return JSONResponse({
            "approval": item.to_dict(),
            "pending_count": handle.orchestrator.approvals.pending_count(),
        })

    async def changes(request: Request) -> JSONResponse:
        """GET /sessions/{session_id}/changes - Staged preview and applied history."""
        handle = await _handle(request)
        if isinstance(handle, JSONResponse):
            return handle
        manager = handle.orchestrator.changes
        if manager is None:
            return JSONResponse({"error": "Change tracking not enabled"}, status_code=404)
        current = manager.get_current_change_set()
        return JSONResponse({
            "preview": manager.preview_changes(),
            "current": current.to_dict() if current else None,
            "history": [cs.to_dict() for cs in manager.get_history()],
        })

    async def rollback(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/changes/rollback - Undo the last applied set."""
        handle = await _handle(request)
        if isinstance(handle, JSONResponse):
            return handle
        manager = handle.orchestrator.changes
        if manager is None:
            return JSONResponse({"error": "Change tracking not enabled"}, status_code=404)
        async with handle.lock:
            try:
                cs = manager.rollback_change_set()
            except ChangeSetError as e:
                return JSONResponse({"error": str(e)}, status_code=409)
        return JSONResponse({"status": "rolled_back", "change_set": cs.to_dict()})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse({"status": "healthy", "model": settings.model, "sessions": len(pool)})

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/{session_id}/continue", continue_chat, methods=["POST"]),
        Route("/sessions", list_sessions),
        Route("/sessions/{session_id}", session_status),
        Route("/sessions/{session_id}", delete_session, methods=["DELETE"]),
        Route("/sessions/{session_id}/reset", reset_session, methods=["POST"]),
        Route("/sessions/{session_id}/teaching", set_teaching, methods=["PUT"]),
        Route("/sessions/{session_id}/approvals", list_approvals),
        Route("/sessions/{session_id}/approvals/{approval_id}/approve", approve, methods=["POST"]),
        Route("/sessions/{session_id}/approvals/{approval_id}/reject", reject, methods=["POST"]),
        Route("/sessions/{session_id}/changes", changes),
        Route("/sessions/{session_id}/changes/rollback", rollback, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
