from obstracker.rules.filters import TrackerFilters
from obstracker.ui import views
from obstracker.ui.state import TrackerState


def test_badges_and_truncate():
    assert views.risk_badge(1) == '<span class="badge risk-critical">Critical</span>'
    assert views.risk_badge(None) == '<span class="badge">-</span>'
    assert views.status_badge(1) == '<span class="badge status-in-progress">In Progress</span>'
    assert views.truncate("abcdef", 3) == "abc..."
    assert views.truncate("abc", 3) == "abc"


def test_empty_tracker_rows_explain_filters():
    empty = views.render_tracker_rows(TrackerState())
    assert "Start by adding your first observation." in empty
    assert 'data-action="create-first"' in empty

    filtered = views.render_tracker_rows(TrackerState(filters=TrackerFilters(year="1999")))
    assert "Try adjusting your filters" in filtered
    assert "create-first" not in filtered


def test_tracker_rows_escape_content_and_show_overdue_badge():
    row = {
        "cr650_ia_observationid": "obs-1",
        "cr650_observation": "<script>alert(1)</script>",
        "cr650_daysoverdue": 12,
        "cr650_status": 2,
    }
    state = TrackerState(rows=(row,), filtered=(row,), pending_update_ids=frozenset({"obs-1"}))
    html = views.render_tracker_rows(state)
    assert "<script>" not in html
    assert "&lt;script&gt;" in html
    assert "12d overdue" in html
    assert "Client updated" in html
    assert 'data-action="accept-response" data-obs-id="obs-1"' in html
    assert 'data-action="reject-response" data-obs-id="obs-1"' in html

    settled = views.render_tracker_rows(TrackerState(rows=(row,), filtered=(row,)))
    assert "accept-response" not in settled


def test_closed_page_links_back_with_encoded_email():
    html = views.render_closed_page(
        {"cr650_email": "ama+audit@example.com", "cr650_closingremarks": "Resolved"},
        "/Client-Observation-Dashboard/",
    )
    assert "/Client-Observation-Dashboard/?email=ama%2Baudit%40example.com" in html
    assert "Closing Remarks" in html


def test_documents_and_previous_submissions():
    assert "No documents uploaded." in views.render_documents([])
    docs = views.render_documents(
        [{"cr650_documentname": "evidence.pdf", "cr650_sharepointurl": "/sites/ia/evidence.pdf"}],
        base_url="https://sp.example.com",
    )
    assert 'href="https://sp.example.com/sites/ia/evidence.pdf"' in docs

    subs = views.render_previous_submissions(
        [{"cr650_submitteddate": "2024-06-20T08:00:00Z", "cr650_revisedduedate": "2024-09-30T00:00:00Z"}]
    )
    assert "Previous Submissions (1)" in subs
    assert "Sep 30, 2024" in subs
