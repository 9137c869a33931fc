from __future__ import annotations

from html import escape
from urllib.parse import quote
from typing import Any, Iterable, List, Mapping, Optional

from obstracker.core.codes import ObservationStatus, RiskRating, coerce_code, label_for
from obstracker.core.records import (
    D_NAME,
    D_UPLOADED_BY,
    D_URL,
    F_AUDIT_NAME,
    F_AUDIT_REPORT_DATE,
    F_CLOSING_REMARKS,
    F_CREATED_ON,
    F_DATE_CLOSED,
    F_DAYS_OVERDUE,
    F_DETAILS,
    F_DUE_DATE,
    F_EMAIL,
    F_ID,
    F_MANAGEMENT_RESPONSE,
    F_OBSERVATION,
    F_PERSON,
    F_QUARTER,
    F_RISK,
    F_STATUS,
    F_YEAR,
    U_REVISED_DUE_DATE,
    U_REVISED_FEEDBACK,
    U_SUBMITTED_DATE,
    as_int,
    as_text,
    format_display_date,
    iso_day,
)
from obstracker.ui.state import TrackerState

SEARCH_DEBOUNCE_MS = 300


def _e(value: Any) -> str:
    return escape(as_text(value), quote=True)


def truncate(text: Any, max_length: int) -> str:
    value = as_text(text)
    if len(value) <= max_length:
        return value
    return value[:max_length] + "..."


def risk_badge(value: Any) -> str:
    risk = coerce_code(RiskRating, value)
    if risk is None:
        return '<span class="badge">-</span>'
    return f'<span class="badge {risk.css_class}">{_e(risk.label)}</span>'


def status_badge(value: Any) -> str:
    status = coerce_code(ObservationStatus, value)
    if status is None:
        return '<span class="badge">-</span>'
    css = status.label.lower().replace(" ", "-")
    return f'<span class="badge status-{css}">{_e(status.label)}</span>'


def _page(title: str, body: str) -> str:
    return (
        "<!doctype html>\n<html lang=\"en\">\n<head>\n  <meta charset=\"utf-8\" />\n"
        f"  <title>{_e(title)}</title>\n</head>\n<body>\n{body}\n</body>\n</html>\n"
    )


def render_tracker_rows(state: TrackerState) -> str:
    page = state.current_page()
    if not page.items:
        message = (
            "Try adjusting your filters to find observations."
            if not state.filters.is_empty()
            else "Start by adding your first observation."
        )
        action = "" if not state.filters.is_empty() else '<button data-action="create-first">Add First Observation</button>'
        return (
            '<tr class="empty-row"><td colspan="8"><div class="empty-state">'
            f'<h3 class="empty-title">No observations found</h3><p class="empty-message">{message}</p>{action}'
            "</div></td></tr>"
        )

    rows: List[str] = []
    for obs in page.items:
        obs_id = _e(obs.get(F_ID))
        overdue = as_int(obs.get(F_DAYS_OVERDUE), 0) or 0
        pending = as_text(obs.get(F_ID)) in state.pending_update_ids
        indicator = '<div class="client-update-indicator">Client updated</div>' if pending else ""
        review = (
            f'<button data-action="accept-response" data-obs-id="{obs_id}">Accept</button>'
            f'<button data-action="reject-response" data-obs-id="{obs_id}">Reject</button>'
            if pending
            else ""
        )
        overdue_badge = f'<span class="overdue-badge">{overdue}d overdue</span>' if overdue > 0 else ""
        rows.append(
            f'<tr class="data-row" data-obs-id="{obs_id}">'
            f'<td class="col-period"><span class="period-year">{_e(obs.get(F_YEAR))}</span>'
            f'<span class="period-quarter">{_e(obs.get(F_QUARTER))}</span></td>'
            f'<td class="col-audit">{_e(obs.get(F_AUDIT_NAME))}</td>'
            f'<td class="col-observation">{_e(truncate(obs.get(F_OBSERVATION), 120))}</td>'
            f'<td class="col-risk">{risk_badge(obs.get(F_RISK))}</td>'
            f'<td class="col-status">{status_badge(obs.get(F_STATUS))}{indicator}</td>'
            f'<td class="col-responsible">{_e(obs.get(F_PERSON)) or "-"}</td>'
            f'<td class="col-due">{_e(format_display_date(obs.get(F_DUE_DATE)))}{overdue_badge}</td>'
            '<td class="col-actions">'
            f'<button data-action="edit" data-obs-id="{obs_id}">Edit</button>'
            f'<button data-action="delete" data-obs-id="{obs_id}">Delete</button>'
            f"{review}"
            "</td></tr>"
        )
    return "\n".join(rows)


def render_tracker_page(state: TrackerState, stats: Mapping[str, int]) -> str:
    page = state.current_page()
    info = f"{page.start}-{page.end} of {page.total}" if page.total else "0-0 of 0"
    prev_disabled = "" if page.has_prev else " disabled"
    next_disabled = "" if page.has_next else " disabled"
    body = f"""<main id="tracker" data-search-debounce-ms="{SEARCH_DEBOUNCE_MS}">
  <section class="stats">
    <span id="statTotal">{stats.get("total", 0)}</span>
    <span id="statOverdue">{stats.get("overdue", 0)}</span>
    <span id="statProgress">{stats.get("inProgress", 0)}</span>
    <span id="statClosed">{stats.get("closed", 0)}</span>
  </section>
  <form id="filters">
    <input id="searchInput" name="search" value="{_e(state.filters.search)}" />
    <input id="yearFilter" name="year" value="{_e(state.filters.year)}" />
    <input id="statusFilter" name="status" value="{_e(state.filters.status)}" />
    <input id="riskFilter" name="risk" value="{_e(state.filters.risk)}" />
    <button type="button" data-action="clear-filters">Clear</button>
    <button type="button" data-action="export">Export</button>
  </form>
  <table><tbody id="observationsTableBody">
{render_tracker_rows(state)}
  </tbody></table>
  <nav class="pagination">
    <button id="prevBtn" data-action="prev-page"{prev_disabled}>Previous</button>
    <span id="pageInfo">{info}</span>
    <button id="nextBtn" data-action="next-page"{next_disabled}>Next</button>
  </nav>
</main>"""
    return _page("Observation Tracker", body)


def render_dashboard_page(
    rows: Iterable[Mapping[str, Any]],
    stats: Mapping[str, int],
    *,
    notices: Optional[List[str]] = None,
    user_name: str = "",
) -> str:
    cards: List[str] = []
    for row in rows:
        risk = coerce_code(RiskRating, row.get("riskRating")) or RiskRating.LOW
        overdue = f'<span class="days-overdue">{int(row.get("daysOverdue") or 0)} days overdue</span>' if row.get(
            "status"
        ) == "overdue" else ""
        cards.append(
            f'<article class="observation-card status-{_e(row.get("status"))}" data-action="view" data-obs-id="{_e(row.get("id"))}">'
            f'<header><span class="reference">{_e(row.get("reference"))}</span>'
            f'<span class="badge {risk.css_class}">{_e(risk.label)}</span></header>'
            f'<p class="observation">{_e(truncate(row.get("observation"), 150))}</p>'
            f'<footer><span class="audit">{_e(row.get("auditName"))}</span>'
            f'<span class="due">{_e(format_display_date(row.get("dueDateISO")))}</span>{overdue}</footer>'
            "</article>"
        )
    notice_html = (
        f'<div id="filterNotice">Filtered by: {_e(" | ".join(notices))}</div>' if notices else ""
    )
    body = f"""<main id="client-dashboard" data-search-debounce-ms="{SEARCH_DEBOUNCE_MS}">
  <h1>Welcome{", " + _e(user_name.split(" ")[0]) if user_name and user_name != "N/A" else ""}</h1>
  {notice_html}
  <section class="stats">
    <span id="totalCount">{stats.get("total", 0)}</span>
    <span id="overdueCount">{stats.get("overdue", 0)}</span>
    <span id="pendingCount">{stats.get("pending", 0)}</span>
    <span id="completedCount">{stats.get("completed", 0)}</span>
  </section>
  <section id="observationsGrid">
{chr(10).join(cards) if cards else '<p class="empty">No observations match your filters.</p>'}
  </section>
</main>"""
    return _page("Client Observation Dashboard", body)


def render_documents(documents: Iterable[Mapping[str, Any]], base_url: str = "") -> str:
    docs = list(documents)
    if not docs:
        return '<p class="text-muted">No documents uploaded.</p>'
    items = []
    for doc in docs:
        href = f"{base_url}{as_text(doc.get(D_URL))}"
        items.append(
            f'<div class="document-row"><a href="{_e(href)}" target="_blank">{_e(doc.get(D_NAME))}</a>'
            f'<div class="doc-info">Uploaded by {_e(doc.get(D_UPLOADED_BY) or "Client")} - '
            f"{_e(format_display_date(doc.get(F_CREATED_ON)))}</div></div>"
        )
    return "\n".join(items)


def render_previous_submissions(submissions: Iterable[Mapping[str, Any]]) -> str:
    rows = list(submissions)
    if not rows:
        return ""
    items = []
    for sub in rows:
        feedback = as_text(sub.get(U_REVISED_FEEDBACK))
        revised = sub.get(U_REVISED_DUE_DATE)
        items.append(
            '<div class="submission">'
            f'<span class="submitted">{_e(format_display_date(sub.get(U_SUBMITTED_DATE)))}</span>'
            + (f"<p>{_e(truncate(feedback, 200))}</p>" if feedback else "")
            + (f"<p>Requested Due Date: <strong>{_e(format_display_date(revised))}</strong></p>" if revised else "")
            + "</div>"
        )
    return f'<section id="previousSubmissions"><h3>Previous Submissions ({len(rows)})</h3>{"".join(items)}</section>'


def render_client_form_page(
    observation: Mapping[str, Any],
    submissions: Iterable[Mapping[str, Any]],
    *,
    days_overdue: int,
    documents: Iterable[Mapping[str, Any]] = (),
    document_base_url: str = "",
) -> str:
    obs_ref = _e(observation.get("cr650_name") or observation.get(F_ID))
    body = f"""<main id="mainContent">
  <h1>Observation {obs_ref}</h1>
  <dl>
    <dt>Audit</dt><dd id="auditName">{_e(observation.get(F_AUDIT_NAME)) or "-"}</dd>
    <dt>Audit date</dt><dd id="auditDate">{_e(format_display_date(observation.get(F_AUDIT_REPORT_DATE)))}</dd>
    <dt>Risk</dt><dd>{risk_badge(observation.get(F_RISK))}</dd>
    <dt>Observation</dt><dd id="observation">{_e(observation.get(F_OBSERVATION)) or "-"}</dd>
    <dt>Details</dt><dd id="details">{_e(observation.get(F_DETAILS)) or "No additional details provided."}</dd>
    <dt>Management response</dt><dd id="managementResponse">{_e(observation.get(F_MANAGEMENT_RESPONSE)) or "No management response recorded."}</dd>
    <dt>Due date</dt><dd id="dueDate">{_e(format_display_date(observation.get(F_DUE_DATE)))}</dd>
    <dt>Days overdue</dt><dd id="daysOverdue">{days_overdue}</dd>
  </dl>
  <section id="documentsList">{render_documents(documents, document_base_url)}</section>
  {render_previous_submissions(submissions)}
  <form id="clientUpdateForm" method="post" enctype="multipart/form-data">
    <textarea id="revisedFeedback" name="revisedFeedback" required></textarea>
    <input type="date" id="revisedDueDate" name="revisedDueDate" value="{_e(iso_day(observation.get(F_DUE_DATE)))}" required />
    <textarea id="clientComments" name="clientComments"></textarea>
    <input type="file" name="files" multiple accept=".pdf,.doc,.docx,.xls,.xlsx" />
    <button type="submit" id="submitBtn">Submit Update</button>
  </form>
</main>"""
    return _page("Observation Client", body)


def render_closed_page(observation: Mapping[str, Any], dashboard_url: str) -> str:
    remarks = as_text(observation.get(F_CLOSING_REMARKS))
    email = as_text(observation.get(F_EMAIL))
    body = f"""<main id="closedMessage">
  <h2>This observation has been closed</h2>
  <p>Audit: {_e(observation.get(F_AUDIT_NAME)) or "-"}</p>
  <p>Risk: {_e(label_for(RiskRating, observation.get(F_RISK), "Moderate"))}</p>
  <p>Date closed: {_e(format_display_date(observation.get(F_DATE_CLOSED)))}</p>
  <p>{_e(observation.get(F_OBSERVATION)) or "-"}</p>
  {f"<h3>Closing Remarks</h3><p>{_e(remarks)}</p>" if remarks else ""}
  <a href="{_e(dashboard_url)}?email={_e(quote(email))}">Back to dashboard</a>
</main>"""
    return _page("Observation Closed", body)


def render_access_denied() -> str:
    return _page(
        "Access Denied",
        '<main id="accessDenied"><h2>Access Denied</h2>'
        "<p>You do not have permission to view this observation.</p></main>",
    )


def render_error(message: str) -> str:
    return _page("Error", f'<main id="errorState"><p id="errorMessage">{_e(message)}</p></main>')

