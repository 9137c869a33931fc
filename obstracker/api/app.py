from __future__ import annotations

import io
import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote, urlencode

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import HTMLResponse, StreamingResponse

from obstracker.api.file_relay import AttachmentRelayError, relay_attachments, validate_attachments
from obstracker.api.schemas import (
    AcceptResponseRequest,
    ClientUpdateSubmitResponse,
    DashboardResponse,
    ObservationForm,
    RejectResponseRequest,
    TrackerActionRequest,
    TrackerListResponse,
)
from obstracker.api.security import auth_diagnostics, install_openapi_access_notes, require_auditor
from obstracker.core.codes import AgingBucket, ObservationStatus
from obstracker.core.config import config
from obstracker.core.errors import ReconcileConflict, RecordNotFoundError, RecordStoreError, ValidationFailed
from obstracker.core.records import (
    F_AGING,
    F_CLOSING_REMARKS,
    F_DATE_CLOSED,
    F_DAYS_OVERDUE,
    F_DUE_DATE,
    F_EMAIL,
    F_PERSON,
    F_STATUS,
    U_ID,
    as_text,
    format_wire_date,
    is_closed,
    observation_id,
    observation_reference,
)
from obstracker.core.stores import create_record_store_from_env, fetch_observation
from obstracker.core.version import __version__
from obstracker.exporters.csv_builder import build_csv_from_observations, export_filename
from obstracker.exporters.excel_builder import build_xlsx_from_observations
from obstracker.rules.aging import effective_days_overdue, refresh_derived_fields
from obstracker.rules.closure import apply_status_transition, build_save_payload, closure_field_visibility, validate
from obstracker.rules.filters import (
    DashboardFilters,
    TrackerFilters,
    apply_dashboard_filters,
    apply_tracker_filters,
    dashboard_statistics,
    dashboard_view_row,
    filter_options,
    risk_code_from_param,
    sort_rows,
    status_code_from_param,
    tracker_statistics,
)
from obstracker.rules.reconcile import (
    accept_client_update,
    build_client_update_payload,
    client_access_allowed,
    has_pending_client_update,
    latest_client_update,
    pending_update_ids,
    reject_client_update,
    submitter_for,
    update_is_pending,
)
from obstracker.rules.timeline import build_timeline
from obstracker.ui.actions import ActionRegistry, UnknownAction
from obstracker.ui.session import TrackerSession
from obstracker.ui.state import TrackerState
from obstracker.ui.views import (
    render_access_denied,
    render_client_form_page,
    render_closed_page,
    render_dashboard_page,
    render_error,
    render_tracker_page,
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Observation Tracker API",
    version=__version__,
    description="Audit observation tracking: auditor tracker, client dashboard and client update intake.",
)
install_openapi_access_notes(app)

RECORD_STORE = create_record_store_from_env()
TRACKER_ACTIONS = ActionRegistry()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _today() -> date:
    return _now().date()


def _track_resolution() -> bool:
    return config.tracker.mark_client_updates_resolved


@contextmanager
def _store_errors() -> Iterator[None]:
    try:
        yield
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationFailed as exc:
        raise HTTPException(status_code=422, detail=[e.model_dump() for e in exc.errors]) from exc
    except ReconcileConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except RecordStoreError as exc:
        logger.error("Data API call failed (status=%s): %s", exc.status_code, exc)
        raise HTTPException(status_code=502, detail=f"Data API error: {exc}") from exc


def _health_diagnostics() -> Dict[str, Any]:
    return {
        "record_store": {"mode": config.record_store, "backend": type(RECORD_STORE).__name__},
        "file_relay": {"configured": bool(config.file_relay.url)},
        "auth": auth_diagnostics(),
        "tracker": {
            "page_size": config.tracker.page_size,
            "mark_client_updates_resolved": config.tracker.mark_client_updates_resolved,
            "auto_fill_date_closed": config.tracker.auto_fill_date_closed,
        },
    }


@app.get("/health")
def health_check():
    return {"status": "healthy", "version": __version__, "diagnostics": _health_diagnostics()}


# Client dashboard


def _dashboard_data(email: str, due_date: str, status: str, audit: str, search: str) -> Dict[str, Any]:
    # Stored status is not the derived one, so status is filtered after deriving.
    with _store_errors():
        raw_rows = RECORD_STORE.list_observations(
            email=email or None,
            due_date=format_wire_date(due_date) if due_date else None,
            order_by=F_DUE_DATE,
        )
    today = _today()
    rows = [dashboard_view_row(raw, today) for raw in raw_rows]
    filters = DashboardFilters(due_date=due_date, status=status.lower(), audit=audit, search=search.strip())
    filtered = apply_dashboard_filters(rows, filters)

    notices: List[str] = []
    if due_date:
        notices.append(f"Due date {due_date}")
    if status:
        notices.append(f"Status {status}")
    if audit:
        notices.append(f"Audit {audit}")

    user_name = next((as_text(raw.get(F_PERSON)) for raw in raw_rows if as_text(raw.get(F_PERSON))), "")
    return {
        "user": {"email": email, "name": user_name},
        "filters": filters.model_dump(),
        "notices": notices,
        "options": filter_options(rows),
        "statistics": dashboard_statistics(rows),
        "count": len(filtered),
        "observations": filtered,
    }


@app.get("/dashboard", response_model=DashboardResponse)
def client_dashboard(email: str = "", dueDate: str = "", status: str = "", audit: str = "", search: str = ""):
    return _dashboard_data(email, dueDate, status, audit, search)


@app.get("/dashboard/ui", response_class=HTMLResponse)
def client_dashboard_ui(email: str = "", dueDate: str = "", status: str = "", audit: str = "", search: str = ""):
    try:
        data = _dashboard_data(email, dueDate, status, audit, search)
    except HTTPException as exc:
        return HTMLResponse(render_error(str(exc.detail)), status_code=exc.status_code)
    return HTMLResponse(
        render_dashboard_page(
            data["observations"],
            data["statistics"],
            notices=data["notices"],
            user_name=data["user"]["name"],
        )
    )


# Auditor tracker


def _tracker_filters(search: str, year: str, status: str, risk: str) -> TrackerFilters:
    status_code = status_code_from_param(status)
    risk_code = risk_code_from_param(risk)
    return TrackerFilters(
        search=search.strip(),
        year=year.strip(),
        status=str(int(status_code)) if status_code is not None else status.strip(),
        risk=str(int(risk_code)) if risk_code is not None else risk.strip(),
    )


def _tracker_session(filters: TrackerFilters, *, sort: str, order: str, page: int) -> Tuple[TrackerSession, Dict[str, int]]:
    with _store_errors():
        rows = RECORD_STORE.list_observations()
        updates = RECORD_STORE.list_client_updates()
    session = TrackerSession(TrackerState.current_page, page_size=config.tracker.page_size)
    try:
        session.sort(sort, order.lower() != "asc")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    session.load(rows, pending_update_ids(updates, track_resolution=_track_resolution()))
    session.apply_filters(filters)
    session.go_to_page(page)
    return session, tracker_statistics(rows)


def _tracker_listing(session: TrackerSession, stats: Dict[str, int]) -> Dict[str, Any]:
    state = session.state
    current = state.current_page()
    items = [dict(row, hasPendingClientUpdate=observation_id(row) in state.pending_update_ids) for row in current.items]
    return {
        "filters": state.filters.model_dump(),
        "statistics": stats,
        "pagination": current.model_dump(exclude={"items"}),
        "observations": items,
    }


@app.get("/tracker/observations", response_model=TrackerListResponse)
def list_tracker_observations(
    request: Request,
    search: str = "",
    year: str = "",
    status: str = "",
    risk: str = "",
    page: int = 1,
    sort: str = F_DUE_DATE,
    order: str = "desc",
):
    require_auditor(request)
    filters = _tracker_filters(search, year, status, risk)
    session, stats = _tracker_session(filters, sort=sort, order=order, page=page)
    return _tracker_listing(session, stats)


@app.get("/tracker/ui", response_class=HTMLResponse)
def tracker_ui(
    request: Request,
    search: str = "",
    year: str = "",
    status: str = "",
    risk: str = "",
    page: int = 1,
    sort: str = F_DUE_DATE,
    order: str = "desc",
):
    require_auditor(request)
    filters = _tracker_filters(search, year, status, risk)
    session, stats = _tracker_session(filters, sort=sort, order=order, page=page)
    return HTMLResponse(render_tracker_page(session.state, stats))


def _observation_detail(obs_id: str) -> Dict[str, Any]:
    with _store_errors():
        observation = RECORD_STORE.get_observation(obs_id)
        updates = RECORD_STORE.list_client_updates(obs_id)
        documents = RECORD_STORE.list_documents(obs_id)
    refreshed = refresh_derived_fields(observation, _today())
    return {
        "observation": observation,
        "derived": {key: refreshed.get(key) for key in (F_DAYS_OVERDUE, F_AGING)},
        "latestClientUpdate": latest_client_update(updates),
        "hasPendingClientUpdate": has_pending_client_update(obs_id, updates, track_resolution=_track_resolution()),
        "documents": documents,
        "timeline": build_timeline(observation, updates),
        "closureFields": closure_field_visibility(observation.get(F_STATUS)),
    }


@app.get("/tracker/observations/{observation_id}")
def get_tracker_observation(observation_id: str, request: Request):
    require_auditor(request)
    return _observation_detail(observation_id)


def _save_payload(form: ObservationForm) -> Dict[str, Any]:
    return build_save_payload(
        form.model_dump(exclude={"agingTouched"}, exclude_none=True),
        today=_today(),
        now=_now(),
        auto_fill_date_closed=config.tracker.auto_fill_date_closed,
        aging_touched=form.agingTouched,
    )


@app.post("/tracker/observations", status_code=201)
def create_tracker_observation(form: ObservationForm, request: Request):
    require_auditor(request)
    with _store_errors():
        payload = _save_payload(form)
        created = RECORD_STORE.create_observation(payload)
    logger.info("Observation created (id=%s)", observation_id(created or {}) or "-")
    return {"status": "created", "observation": created}


@app.patch("/tracker/observations/{observation_id}")
def update_tracker_observation(observation_id: str, form: ObservationForm, request: Request):
    require_auditor(request)
    with _store_errors():
        RECORD_STORE.get_observation(observation_id)
        payload = _save_payload(form)
        RECORD_STORE.update_observation(observation_id, payload)
    logger.info("Observation updated (id=%s)", observation_id)
    return {"status": "updated", "observation_id": observation_id}


def _delete_observation(observation_id: str) -> Dict[str, Any]:
    with _store_errors():
        RECORD_STORE.delete_observation(observation_id)
    logger.info("Observation deleted (id=%s)", observation_id)
    return {"status": "deleted", "observation_id": observation_id}


@app.delete("/tracker/observations/{observation_id}")
def delete_tracker_observation(observation_id: str, request: Request):
    require_auditor(request)
    return _delete_observation(observation_id)


def _resolve_pending(updates: List[Dict[str, Any]], patch: Optional[Dict[str, Any]]) -> List[str]:
    if not patch:
        return []
    resolved = []
    for update in updates:
        if update_is_pending(update, track_resolution=True) and as_text(update.get(U_ID)):
            RECORD_STORE.update_client_update(update[U_ID], patch)
            resolved.append(update[U_ID])
    return resolved


def _accept_response(observation_id: str, closing_remarks: str) -> Dict[str, Any]:
    with _store_errors():
        observation = RECORD_STORE.get_observation(observation_id)
        updates = RECORD_STORE.list_client_updates(observation_id)
        result = accept_client_update(
            observation,
            latest_client_update(updates),
            closing_remarks,
            now=_now(),
            track_resolution=_track_resolution(),
        )
        RECORD_STORE.update_observation(observation_id, result.observation_patch)
        resolved = _resolve_pending(updates, result.update_patch)
    logger.info("Client response accepted (observation_id=%s resolved_updates=%s)", observation_id, len(resolved))
    return {"status": "accepted", "observation_id": observation_id, "patch": result.observation_patch}


def _reject_response(observation_id: str, reason: str) -> Dict[str, Any]:
    with _store_errors():
        observation = RECORD_STORE.get_observation(observation_id)
        updates = RECORD_STORE.list_client_updates(observation_id)
        result = reject_client_update(
            observation,
            latest_client_update(updates),
            reason,
            now=_now(),
            track_resolution=_track_resolution(),
        )
        RECORD_STORE.update_observation(observation_id, result.observation_patch)
        resolved = _resolve_pending(updates, result.update_patch)
    logger.info("Client response rejected (observation_id=%s resolved_updates=%s)", observation_id, len(resolved))
    return {"status": "rejected", "observation_id": observation_id, "patch": result.observation_patch}


@app.post("/tracker/observations/{observation_id}/accept")
def accept_tracker_response(observation_id: str, req: AcceptResponseRequest, request: Request):
    require_auditor(request)
    return _accept_response(observation_id, req.closing_remarks)


@app.post("/tracker/observations/{observation_id}/reject")
def reject_tracker_response(observation_id: str, req: RejectResponseRequest, request: Request):
    require_auditor(request)
    return _reject_response(observation_id, req.reason)


def _require_observation_id(req: TrackerActionRequest) -> str:
    if not req.observation_id:
        raise HTTPException(status_code=400, detail="Missing observation_id")
    return req.observation_id


@TRACKER_ACTIONS.register("view")
def _view_action(req: TrackerActionRequest) -> Dict[str, Any]:
    return _observation_detail(_require_observation_id(req))


@TRACKER_ACTIONS.register("delete")
def _delete_action(req: TrackerActionRequest) -> Dict[str, Any]:
    return _delete_observation(_require_observation_id(req))


@TRACKER_ACTIONS.register("accept-response")
def _accept_action(req: TrackerActionRequest) -> Dict[str, Any]:
    return _accept_response(_require_observation_id(req), req.closing_remarks or "")


@TRACKER_ACTIONS.register("reject-response")
def _reject_action(req: TrackerActionRequest) -> Dict[str, Any]:
    return _reject_response(_require_observation_id(req), req.reason or "")


@TRACKER_ACTIONS.register("change-status")
def _change_status_action(req: TrackerActionRequest) -> Dict[str, Any]:
    obs_id = _require_observation_id(req)
    with _store_errors():
        original = RECORD_STORE.get_observation(obs_id)
        draft = dict(original)
        if req.closing_remarks is not None:
            draft[F_CLOSING_REMARKS] = req.closing_remarks.strip()
        if req.date_closed:
            draft[F_DATE_CLOSED] = format_wire_date(req.date_closed)
        updated = apply_status_transition(
            draft,
            req.status,
            now=_now(),
            auto_fill_date_closed=config.tracker.auto_fill_date_closed,
        )
        errors = validate(updated)
        if errors:
            raise ValidationFailed(errors)
        patch: Dict[str, Any] = {F_STATUS: updated[F_STATUS]}
        for key in (F_AGING, F_DATE_CLOSED, F_CLOSING_REMARKS):
            if updated.get(key) != original.get(key):
                patch[key] = updated.get(key)
        RECORD_STORE.update_observation(obs_id, patch)
    logger.info("Observation status changed (id=%s status=%s)", obs_id, patch[F_STATUS])
    return {"status": "updated", "observation_id": obs_id, "patch": patch}


@TRACKER_ACTIONS.register("edit")
def _edit_action(req: TrackerActionRequest) -> Dict[str, Any]:
    return dict(_observation_detail(_require_observation_id(req)), mode="edit")


@TRACKER_ACTIONS.register("create-first")
def _create_first_action(req: TrackerActionRequest) -> Dict[str, Any]:
    return {
        "mode": "create",
        "defaults": {F_STATUS: int(ObservationStatus.IN_PROGRESS), F_AGING: int(AgingBucket.NOT_DUE)},
        "closureFields": closure_field_visibility(ObservationStatus.IN_PROGRESS),
    }


def _listing_session(req: TrackerActionRequest) -> Tuple[TrackerSession, Dict[str, int]]:
    filters = _tracker_filters(req.search, req.year, req.status_filter, req.risk)
    return _tracker_session(filters, sort=req.sort, order=req.order, page=req.page)


@TRACKER_ACTIONS.register("clear-filters")
def _clear_filters_action(req: TrackerActionRequest) -> Dict[str, Any]:
    session, stats = _listing_session(req)
    session.clear_filters()
    return _tracker_listing(session, stats)


@TRACKER_ACTIONS.register("next-page")
def _next_page_action(req: TrackerActionRequest) -> Dict[str, Any]:
    session, stats = _listing_session(req)
    session.next_page()
    return _tracker_listing(session, stats)


@TRACKER_ACTIONS.register("prev-page")
def _prev_page_action(req: TrackerActionRequest) -> Dict[str, Any]:
    session, stats = _listing_session(req)
    session.previous_page()
    return _tracker_listing(session, stats)


@TRACKER_ACTIONS.register("export")
def _export_action(req: TrackerActionRequest) -> Dict[str, Any]:
    rows = _export_rows(req.search, req.year, req.status_filter, req.risk)
    params = {"search": req.search, "year": req.year, "status": req.status_filter, "risk": req.risk}
    query = urlencode({key: value for key, value in params.items() if value})
    suffix = f"?{query}" if query else ""
    return {"count": len(rows), "csv": f"/tracker/export.csv{suffix}", "xlsx": f"/tracker/export.xlsx{suffix}"}


@app.post("/tracker/actions")
def dispatch_tracker_action(req: TrackerActionRequest, request: Request):
    require_auditor(request)
    try:
        return TRACKER_ACTIONS.dispatch(req.action, req=req)
    except UnknownAction as exc:
        raise HTTPException(
            status_code=400,
            detail={"message": f"Unknown action: {req.action}", "actions": TRACKER_ACTIONS.actions()},
        ) from exc


def _export_rows(search: str, year: str, status: str, risk: str) -> List[Dict[str, Any]]:
    with _store_errors():
        rows = RECORD_STORE.list_observations()
    filters = _tracker_filters(search, year, status, risk)
    rows = apply_tracker_filters(sort_rows(rows, F_DUE_DATE, descending=True), filters)
    if not rows:
        raise HTTPException(status_code=404, detail="No observations to export.")
    return rows


@app.get("/tracker/export.csv")
def export_tracker_csv(request: Request, search: str = "", year: str = "", status: str = "", risk: str = ""):
    require_auditor(request)
    rows = _export_rows(search, year, status, risk)
    content = build_csv_from_observations(rows)
    filename = export_filename(_today(), "csv")
    logger.info("Tracker CSV export (rows=%s)", len(rows))
    return StreamingResponse(
        io.BytesIO(content.encode("utf-8")),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.get("/tracker/export.xlsx")
def export_tracker_xlsx(request: Request, search: str = "", year: str = "", status: str = "", risk: str = ""):
    require_auditor(request)
    rows = _export_rows(search, year, status, risk)
    content = build_xlsx_from_observations(rows)
    filename = export_filename(_today(), "xlsx")
    logger.info("Tracker XLSX export (rows=%s)", len(rows))
    return StreamingResponse(
        io.BytesIO(content),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


# Client update page


def _client_view(id_or_ref: str, email: str) -> Dict[str, Any]:
    with _store_errors():
        observation = fetch_observation(RECORD_STORE, id_or_ref)
    if not client_access_allowed(observation, email):
        logger.warning("Client access denied (observation=%s)", id_or_ref)
        raise HTTPException(status_code=403, detail="You do not have permission to view this observation.")
    if is_closed(observation):
        return {"closed": True, "observation": observation}
    obs_id = observation_id(observation)
    with _store_errors():
        submissions = RECORD_STORE.list_client_updates(obs_id)
        documents = RECORD_STORE.list_documents(obs_id)
    return {
        "closed": False,
        "observation": observation,
        "daysOverdue": effective_days_overdue(observation, _today()),
        "submittedBy": submitter_for(observation),
        "previousSubmissions": submissions,
        "documents": documents,
    }


@app.get("/client/observations/{id_or_ref}")
def get_client_observation(id_or_ref: str, email: str = ""):
    return _client_view(id_or_ref, email)


@app.get("/client/observations/{id_or_ref}/ui", response_class=HTMLResponse)
def client_observation_ui(id_or_ref: str, email: str = ""):
    try:
        view = _client_view(id_or_ref, email)
    except HTTPException as exc:
        if exc.status_code == 403:
            return HTMLResponse(render_access_denied(), status_code=403)
        return HTMLResponse(render_error(str(exc.detail)), status_code=exc.status_code)
    if view["closed"]:
        return HTMLResponse(render_closed_page(view["observation"], config.tracker.dashboard_url))
    return HTMLResponse(
        render_client_form_page(
            view["observation"],
            view["previousSubmissions"],
            days_overdue=view["daysOverdue"],
            documents=view["documents"],
            document_base_url=config.tracker.document_base_url,
        )
    )


@app.post(
    "/client/observations/{id_or_ref}/updates",
    status_code=201,
    response_model=ClientUpdateSubmitResponse,
)
async def submit_client_update(
    id_or_ref: str,
    revisedFeedback: str = Form(""),
    revisedDueDate: str = Form(""),
    clientComments: str = Form(""),
    email: str = Form(""),
    files: Optional[List[UploadFile]] = File(default=None),
):
    with _store_errors():
        observation = fetch_observation(RECORD_STORE, id_or_ref)
    if not client_access_allowed(observation, email):
        raise HTTPException(status_code=403, detail="You do not have permission to update this observation.")
    if is_closed(observation):
        raise HTTPException(status_code=409, detail="Observation is closed")

    attachments: List[Tuple[str, bytes]] = []
    for upload in files or []:
        if not upload.filename:
            continue
        attachments.append((upload.filename, await upload.read()))
    attachment_errors = validate_attachments(attachments, config.file_relay)
    if attachment_errors:
        raise HTTPException(status_code=422, detail=[e.model_dump() for e in attachment_errors])

    form = {"revisedFeedback": revisedFeedback, "revisedDueDate": revisedDueDate, "clientComments": clientComments}
    with _store_errors():
        payload = build_client_update_payload(observation, form, now=_now())
        created = RECORD_STORE.create_client_update(payload)

    obs_id = observation_id(observation)
    warnings: List[str] = []
    if attachments:
        try:
            relay_attachments(
                observation_id=obs_id,
                observation_name=observation_reference(observation),
                uploaded_by=submitter_for(observation),
                files=attachments,
                settings=config.file_relay,
            )
        except AttachmentRelayError as exc:
            warnings.append(f"Update saved but file upload failed: {exc}")

    owner_email = as_text(observation.get(F_EMAIL)) or email
    logger.info("Client update submitted (observation_id=%s files=%s)", obs_id, len(attachments))
    return {
        "status": "submitted",
        "observation_id": obs_id,
        "update": created,
        "warnings": warnings,
        "redirect": f"{config.tracker.dashboard_url}?email={quote(owner_email)}" if owner_email else None,
    }


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.DEBUG if config.debug else logging.INFO)
    uvicorn.run(app, host=config.api_host, port=config.api_port, reload=config.debug)
