import pytest

import rm_issue_viewer as rmv
from conftest import make_issue, make_project, ts


class FakeClient:
    """Serves pre-built pages; records every call."""

    def __init__(self, issues=(), projects=(), users=(), recent=(), total=None, fail_at_offset=None):
        self.issues = list(issues)
        self.projects = list(projects)
        self.users = list(users)
        self.recent = list(recent)
        self.total = total
        self.fail_at_offset = fail_at_offset
        self.recent_error = None
        self.users_error = None
        self.calls = []

    def _page(self, items, limit, offset, total=None):
        chunk = items[offset:offset + limit]
        return rmv.Page(items=chunk, total_count=len(items) if total is None else total,
                        offset=offset, limit=limit)

    def get_issues(self, project_id=None, status_id='*', limit=100, offset=0, exclude_subprojects=True):
        self.calls.append(('issues', project_id, offset, limit, exclude_subprojects))
        if self.fail_at_offset is not None and offset >= self.fail_at_offset:
            raise rmv.RemoteError('boom', status=500)
        return self._page(self.issues, limit, offset, self.total)

    def get_projects(self, limit=100, offset=0):
        self.calls.append(('projects', offset))
        return self._page(self.projects, limit, offset)

    def get_recent_issues(self, limit=100, offset=0):
        self.calls.append(('recent', limit))
        if self.recent_error:
            raise self.recent_error
        return rmv.Page(items=self.recent[:limit], total_count=len(self.recent))

    def get_users(self, limit=100, offset=0):
        self.calls.append(('users', offset))
        if self.users_error:
            raise self.users_error
        return self._page(self.users, limit, offset)

    def get_issue(self, issue_id):
        for issue in self.issues:
            if issue.id == issue_id:
                return issue
        raise rmv.RemoteError('Resource not found', status=404)

    def get_trackers(self):
        return [rmv.IdName(1, 'Bug')]

    def get_issue_statuses(self):
        raise rmv.RemoteError('nope', status=403)

    def get_priorities(self):
        return [rmv.IdName(2, 'Normal')]

    def get_current_user(self):
        return rmv.User(9, 'me', 'Me', 'Myself')


def _issues(count, project_id=1):
    return [make_issue(1000 + n, project_id=project_id, updated_on=ts(n)) for n in range(count)]


def _drive(controller):
    steps = 0
    while True:
        steps += 1
        if controller.advance_one_page() is rmv.SyncStep.COMPLETED:
            return steps


def test_begin_is_noop_while_in_progress(cache):
    controller = rmv.SyncController(cache, FakeClient())
    assert controller.begin(1) is True
    assert controller.begin(2) is False
    assert controller.project_id == 1
    assert controller.state is rmv.SyncState.IN_PROGRESS


def test_pages_until_total_and_flushes_once(cache, monkeypatch):
    client = FakeClient(issues=_issues(250))
    controller = rmv.SyncController(cache, client, page_size=100)
    flushes = []
    original = cache.upsert_issues
    monkeypatch.setattr(cache, 'upsert_issues', lambda issues: (flushes.append(len(issues)), original(issues)))

    controller.begin(1)
    assert controller.advance_one_page() is rmv.SyncStep.CONTINUE
    assert controller.progress_message() == 'Loading issues... 100/250'
    assert cache.count_issues(1) == 0
    assert controller.advance_one_page() is rmv.SyncStep.CONTINUE
    assert controller.advance_one_page() is rmv.SyncStep.COMPLETED

    assert [c[2] for c in client.calls] == [0, 100, 200]
    assert all(c[4] is True for c in client.calls)
    assert flushes == [250]
    assert cache.count_issues(1) == 250
    assert controller.state is rmv.SyncState.IDLE
    assert controller.loaded_count == 250


def test_exact_multiple_completes_when_total_reached(cache):
    client = FakeClient(issues=_issues(200))
    controller = rmv.SyncController(cache, client, page_size=100)
    controller.begin(1)
    assert _drive(controller) == 2
    assert cache.count_issues(1) == 200


def test_short_page_completes_without_total(cache):
    client = FakeClient(issues=_issues(30))
    client._page = lambda items, limit, offset, total=None: rmv.Page(items=items[offset:offset + limit])
    controller = rmv.SyncController(cache, client, page_size=20)
    controller.begin(1)
    assert _drive(controller) == 2
    assert cache.count_issues(1) == 30


class CappedClient(FakeClient):
    """Never serves more than 100 rows per page, whatever limit is asked for."""

    def _page(self, items, limit, offset, total=None):
        return super()._page(items, min(limit, 100), offset, total)


def test_server_capped_pages_do_not_end_issue_sync_early(cache):
    client = CappedClient(issues=_issues(350))
    controller = rmv.SyncController(cache, client, page_size=200)
    controller.begin(1)

    assert _drive(controller) == 4
    assert [c[2] for c in client.calls] == [0, 100, 200, 300]
    assert cache.count_issues(1) == 350


def test_server_capped_project_listing_is_complete(cache):
    client = CappedClient(projects=[make_project(n) for n in range(1, 251)])
    controller = rmv.SyncController(cache, client, page_size=200)

    assert controller.sync_all_projects().count == 250
    assert [c for c in client.calls if c[0] == 'projects'] == [
        ('projects', 0), ('projects', 100), ('projects', 200)]
    assert cache.count_projects() == 250


def test_failed_page_discards_buffer_and_resets(cache):
    client = FakeClient(issues=_issues(250), fail_at_offset=200)
    controller = rmv.SyncController(cache, client, page_size=100)
    controller.begin(1)
    controller.advance_one_page()
    controller.advance_one_page()
    with pytest.raises(rmv.SyncError) as excinfo:
        controller.advance_one_page()
    assert 'issues' in str(excinfo.value)
    assert excinfo.value.operation == 'issues'
    assert controller.state is rmv.SyncState.IDLE
    assert cache.count_issues(1) == 0

    # a retry starts over from offset 0
    client.fail_at_offset = None
    client.calls.clear()
    controller.begin(1)
    _drive(controller)
    assert client.calls[0][2] == 0
    assert cache.count_issues(1) == 250


def test_cancel_discards_without_flushing(cache):
    controller = rmv.SyncController(cache, FakeClient(issues=_issues(150)), page_size=100)
    controller.begin(1)
    controller.advance_one_page()
    controller.cancel()
    assert not controller.in_progress
    assert controller.advance_one_page() is rmv.SyncStep.COMPLETED
    assert cache.count_issues() == 0


def test_cache_failure_during_flush_is_recorded_not_raised(cache, monkeypatch):
    controller = rmv.SyncController(cache, FakeClient(issues=_issues(5)))

    def _fail(issues):
        raise rmv.CacheError('Failed to store issues: disk full')

    monkeypatch.setattr(cache, 'upsert_issues', _fail)
    controller.begin(1)
    assert controller.advance_one_page() is rmv.SyncStep.COMPLETED
    assert isinstance(controller.last_cache_error, rmv.CacheError)
    assert controller.state is rmv.SyncState.IDLE


def test_split_fetch_and_apply_matches_advance(cache):
    controller = rmv.SyncController(cache, FakeClient(issues=_issues(120)), page_size=100)
    controller.begin(1)
    page = controller.fetch_next_page()
    assert len(page.items) == 100
    assert controller.apply_page(page) is rmv.SyncStep.CONTINUE
    assert controller.apply_page(controller.fetch_next_page()) is rmv.SyncStep.COMPLETED
    assert cache.count_issues(1) == 120


def test_sync_without_client_raises_sync_error(cache):
    controller = rmv.SyncController(cache, None)
    controller.begin(1)
    with pytest.raises(rmv.SyncError):
        controller.advance_one_page()
    assert not controller.in_progress


def test_sync_all_projects_pages_and_enriches(cache):
    projects = [make_project(n) for n in range(1, 131)]
    recent = [
        make_issue(1, project_id=3, updated_on=ts(500)),
        make_issue(2, project_id=3, updated_on=ts(900)),
        make_issue(3, project_id=7, updated_on=ts(10)),
    ]
    users = [rmv.User(1, 'ada', 'Ada', 'Admin')]
    client = FakeClient(projects=projects, recent=recent, users=users)
    controller = rmv.SyncController(cache, client, page_size=100, recent_issue_count=50)

    outcome = controller.sync_all_projects()

    assert outcome.count == 130
    assert outcome.warnings == []
    assert [c for c in client.calls if c[0] == 'projects'] == [('projects', 0), ('projects', 100)]
    assert ('recent', 50) in client.calls
    assert cache.count_projects() == 130
    assert cache.fetch_project(3).last_issue_activity == ts(900)
    assert cache.fetch_project(7).last_issue_activity == ts(10)
    assert [u.login for u in cache.query_users()] == ['ada']


def test_sync_all_projects_swallows_enrichment_failures(cache):
    client = FakeClient(projects=[make_project(1)])
    client.recent_error = rmv.RemoteError('timeout', kind='timeout')
    client.users_error = rmv.RemoteError('forbidden', status=403)
    controller = rmv.SyncController(cache, client)

    outcome = controller.sync_all_projects()

    assert outcome.count == 1
    assert cache.count_projects() == 1
    assert cache.query_users() == []


def test_sync_all_projects_raises_when_projects_fail(cache):
    client = FakeClient()

    def _down(limit=100, offset=0):
        raise rmv.RemoteError('down', kind='connection')

    client.get_projects = _down
    controller = rmv.SyncController(cache, client)
    with pytest.raises(rmv.SyncError) as excinfo:
        controller.sync_all_projects()
    assert excinfo.value.operation == 'projects'


def test_sync_all_projects_reports_cache_failure_as_warning(cache, monkeypatch):
    controller = rmv.SyncController(cache, FakeClient(projects=[make_project(1)]))

    def _fail(projects):
        raise rmv.CacheError('Failed to store projects: locked')

    monkeypatch.setattr(cache, 'upsert_projects', _fail)
    outcome = controller.sync_all_projects()
    assert outcome.warnings == ['Failed to store projects: locked']


def test_refresh_issue_stores_journals(cache):
    journal = rmv.Journal(1, rmv.IdName(2, 'Bob'), ts(3), notes='hello')
    client = FakeClient(issues=[make_issue(10, journals=[journal])])
    controller = rmv.SyncController(cache, client)
    issue = controller.refresh_issue(10)
    assert issue.id == 10
    assert [j.notes for j in cache.fetch_issue_with_journals(10).journals] == ['hello']
    with pytest.raises(rmv.SyncError) as excinfo:
        controller.refresh_issue(11)
    assert excinfo.value.operation == 'issue #11'


def test_load_metadata_is_best_effort(cache):
    meta = rmv.SyncController(cache, FakeClient()).load_metadata()
    assert meta.trackers == [rmv.IdName(1, 'Bug')]
    assert meta.statuses == []
    assert meta.priorities == [rmv.IdName(2, 'Normal')]
    assert meta.current_user_id == 9
