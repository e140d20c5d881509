import asyncio
import dataclasses
import json
from types import SimpleNamespace

import pytest
from prompt_toolkit.keys import Keys

import rm_issue_viewer as rmv
from conftest import make_issue, make_project, ts

STATUSES = [rmv.IdName(1, 'New'), rmv.IdName(2, 'In Progress'), rmv.IdName(5, 'Closed')]
ME = rmv.User(9, 'me', 'Me', 'Myself')


class UIClient:
    """In-memory Redmine: serves issues per project and applies updates."""

    def __init__(self, issues=(), projects=(), users=()):
        self.issues = {i.id: i for i in issues}
        self.projects = list(projects)
        self.users = list(users)
        self.calls = []
        self.created = []
        self.updates = []

    def _page(self, items, limit, offset):
        return rmv.Page(items=items[offset:offset + limit], total_count=len(items), offset=offset, limit=limit)

    def get_issues(self, project_id=None, status_id='*', limit=100, offset=0, exclude_subprojects=True):
        self.calls.append(('issues', offset))
        items = sorted((i for i in self.issues.values() if i.project.id == project_id), key=lambda i: i.id)
        return self._page(items, limit, offset)

    def get_projects(self, limit=100, offset=0):
        self.calls.append(('projects', offset))
        return self._page(self.projects, limit, offset)

    def get_recent_issues(self, limit=100, offset=0):
        return rmv.Page(items=[])

    def get_users(self, limit=100, offset=0):
        self.calls.append(('users', offset))
        return self._page(self.users, limit, offset)

    def get_issue(self, issue_id):
        if issue_id not in self.issues:
            raise rmv.RemoteError('Resource not found', status=404)
        return self.issues[issue_id]

    def create_issue(self, payload):
        self.created.append(payload)
        issue = make_issue(500, project_id=payload['project_id'], subject=payload['subject'], updated_on=ts(900))
        self.issues[issue.id] = issue
        return issue

    def update_issue(self, issue_id, payload):
        self.updates.append((issue_id, payload))
        issue = self.issues[issue_id]
        changes = {'updated_on': ts(1000)}
        if 'status_id' in payload:
            changes['status'] = next(s for s in STATUSES if s.id == payload['status_id'])
        if payload.get('notes'):
            journal = rmv.Journal(len(issue.journals) + 1, rmv.IdName(ME.id, ME.display_name), ts(1000),
                                  notes=payload['notes'])
            changes['journals'] = issue.journals + [journal]
        self.issues[issue_id] = dataclasses.replace(issue, **changes)

    def get_trackers(self):
        return [rmv.IdName(1, 'Bug')]

    def get_issue_statuses(self):
        return list(STATUSES)

    def get_priorities(self):
        return [rmv.IdName(2, 'Normal')]

    def get_current_user(self):
        return ME

    def get_project_memberships(self, project_id, limit=100):
        return [ME]

    def get_project_detail(self, project_id):
        return rmv.ProjectDetail(project=make_project(project_id), trackers=[rmv.IdName(1, 'Bug')],
                                 categories=[rmv.IdName(4, 'UI')])


class RecordingApplication:
    def __init__(self, *args, **kwargs):
        self.key_bindings = kwargs['key_bindings']
        self.background_tasks = []
        self.invalidate_calls = 0
        self.exited = False

    def invalidate(self):
        self.invalidate_calls += 1

    def create_background_task(self, coro):
        self.background_tasks.append(coro)

    def run(self, pre_run=None):
        if pre_run is not None:
            pre_run()

    def exit(self, result=None):
        self.exited = True


class Harness:
    def __init__(self, app, state_path):
        self.app = app
        self.kb = app.key_bindings
        self.state_path = state_path

    def press(self, key, data=None):
        for binding in reversed(self.kb.bindings):
            if binding.keys == (key,) and binding.filter():
                binding.handler(SimpleNamespace(app=self.app, data=data or key))
                return
        raise AssertionError(f"no active binding for {key!r}")

    def type(self, text):
        for ch in text:
            self.press(Keys.Any, ch)

    def drain(self):
        while self.app.background_tasks:
            asyncio.run(self.app.background_tasks.pop(0))

    def value(self, name):
        """Current value of a run_ui local, found through the handlers' closures."""
        queue = [b.handler for b in self.kb.bindings]
        seen = set()
        while queue:
            func = queue.pop(0)
            if id(func) in seen or not hasattr(func, '__code__'):
                continue
            seen.add(id(func))
            cells = dict(zip(func.__code__.co_freevars, func.__closure__ or ()))
            if name in cells:
                return cells[name].cell_contents
            for cell in cells.values():
                try:
                    content = cell.cell_contents
                except ValueError:
                    continue
                if hasattr(content, '__code__'):
                    queue.append(content)
        raise AssertionError(f"{name} not reachable from key handlers")

    def saved_state(self):
        return json.loads(self.state_path.read_text(encoding='utf-8'))


@pytest.fixture
def build_ui(monkeypatch, tmp_path):
    apps = []

    def _application(*args, **kwargs):
        app = RecordingApplication(*args, **kwargs)
        apps.append(app)
        return app

    monkeypatch.setattr(rmv, 'Application', _application)
    state_path = tmp_path / 'ui.json'
    cfg = rmv.Config(redmine_url='https://redmine.example.com', api_key='key')

    def _build(cache, client, state=None):
        if state is not None:
            state_path.write_text(json.dumps(state), encoding='utf-8')
        rmv.run_ui(cache, cfg, client, state_path=str(state_path))
        return Harness(apps[-1], state_path)

    return _build


def _seed(cache, issues=(), users=(ME,)):
    cache.upsert_projects([make_project(1, 'Alpha')])
    if issues:
        cache.upsert_issues(list(issues))
    if users:
        cache.upsert_users(list(users))


def test_startup_loads_metadata_projects_and_users(cache, build_ui):
    client = UIClient(projects=[make_project(1, 'Alpha'), make_project(2, 'Beta')], users=[ME])
    ui = build_ui(cache, client)
    assert ui.value('busy') is True

    ui.drain()

    assert cache.count_projects() == 2
    assert [u.id for u in cache.query_users()] == [9]
    assert ui.value('view').current_user_id == 9
    assert ui.saved_state()['current_user_id'] == 9
    assert len(ui.value('result').projects) == 2
    assert [s.name for s in ui.value('metadata').statuses] == ['New', 'In Progress', 'Closed']
    assert ui.value('busy') is False


def test_startup_leaves_populated_caches_alone(cache, build_ui):
    _seed(cache)
    client = UIClient(projects=[make_project(1), make_project(2)], users=[ME])
    ui = build_ui(cache, client)
    ui.drain()

    assert client.calls == []
    assert cache.count_projects() == 1
    assert ui.value('view').current_user_id == 9


def test_mine_only_list_stays_empty_until_current_user_loads(cache, build_ui):
    _seed(cache, [make_issue(10, assigned_to=rmv.IdName(9, 'Me Myself')), make_issue(11)])
    ui = build_ui(cache, UIClient(), state={'selected_project_id': 1, 'my_issues_only': True})
    assert ui.value('result').issues == []

    ui.drain()

    assert [i.id for i in ui.value('result').issues] == [10]


def test_r_applies_one_page_per_tick_then_refreshes(cache, build_ui, monkeypatch):
    _seed(cache)
    client = UIClient(issues=[make_issue(1000 + n, updated_on=ts(n)) for n in range(250)])
    ui = build_ui(cache, client, state={'selected_project_id': 1})
    ui.drain()

    applied = []
    original = rmv.SyncController.apply_page

    def _recording(self, page):
        applied.append((page.offset, cache.count_issues(1)))
        return original(self, page)

    monkeypatch.setattr(rmv.SyncController, 'apply_page', _recording)
    ui.press('r')
    assert ui.value('busy') is True
    ui.drain()

    assert applied == [(0, 0), (100, 0), (200, 0)]
    assert cache.count_issues(1) == 250
    assert len(ui.value('result').issues) == 250
    assert ui.value('status_line') == 'Loaded 250 issues'
    assert ui.value('busy') is False


def test_R_syncs_projects_and_users(cache, build_ui):
    _seed(cache)
    client = UIClient(projects=[make_project(1, 'Alpha'), make_project(2, 'Beta')],
                      users=[ME, rmv.User(3, 'ada', 'Ada', 'Admin')])
    ui = build_ui(cache, client)
    ui.drain()

    ui.press('R')
    ui.drain()

    assert cache.count_projects() == 2
    assert [u.id for u in cache.query_users()] == [3, 9]
    assert [p.name for p in ui.value('result').projects] == ['Alpha', 'Beta']
    assert ui.value('status_line') == 'Loaded 2 projects'


def test_enter_refreshes_list_after_detail_fetch(cache, build_ui):
    _seed(cache, [make_issue(10, subject='Old title')])
    client = UIClient(issues=[make_issue(10, subject='New title', updated_on=ts(2000))])
    ui = build_ui(cache, client, state={'selected_project_id': 1})
    ui.drain()

    ui.press(Keys.Enter)
    assert ui.value('detail_issue').subject == 'Old title'
    ui.drain()

    assert ui.value('detail_issue').subject == 'New title'
    assert [i.subject for i in ui.value('result').issues] == ['New title']
    assert ui.value('status_line') == 'Loaded issue #10'


def test_comment_reports_cache_failure(cache, build_ui, monkeypatch):
    _seed(cache, [make_issue(10)])
    client = UIClient(issues=[make_issue(10)])
    ui = build_ui(cache, client, state={'selected_project_id': 1})
    ui.drain()
    ui.press(Keys.Enter)
    ui.drain()

    ui.press('c')
    ui.type('hi')
    ui.press(Keys.Enter)

    def _fail(issue):
        raise rmv.CacheError('Failed to store issue #10: disk full')

    monkeypatch.setattr(cache, 'upsert_issue_with_journals', _fail)
    ui.drain()

    assert client.updates == [(10, {'notes': 'hi'})]
    assert ui.value('status_line') == 'Failed to store issue #10: disk full'
    assert ui.value('detail_issue').journals[-1].notes == 'hi'


def test_enter_on_group_header_persists_collapse(cache, build_ui):
    _seed(cache, [make_issue(10), make_issue(11)])
    ui = build_ui(cache, None, state={'selected_project_id': 1, 'group_by_status': True})

    ui.press(Keys.Enter)

    assert ui.value('view').collapsed_statuses == {'New'}
    assert ui.saved_state()['collapsed_statuses'] == ['New']
    assert ui.app.background_tasks == []


def test_new_issue_form_creates_and_lists_issue(cache, build_ui):
    _seed(cache, [make_issue(10)])
    client = UIClient(issues=[make_issue(10)])
    ui = build_ui(cache, client, state={'selected_project_id': 1})
    ui.drain()

    ui.press('n')
    ui.drain()
    editor = ui.value('form_editor')
    assert editor.title == 'New issue'
    assert [o.name for o in editor.form.field('assigned_to_id').options] == ['(None)', 'Me Myself']
    assert editor.form.field('category_id') is not None

    ui.press(Keys.Tab)
    ui.type('Printer on fire')
    ui.press(Keys.Enter)
    ui.drain()

    created = client.created[0]
    assert created['subject'] == 'Printer on fire'
    assert created['project_id'] == 1
    assert created['status_id'] == 1
    assert ui.value('form_editor') is None
    assert ui.value('status_line') == 'Created issue #500'
    assert 500 in [i.id for i in ui.value('result').issues]


def test_new_issue_form_keeps_open_on_missing_subject(cache, build_ui):
    _seed(cache)
    client = UIClient()
    ui = build_ui(cache, client, state={'selected_project_id': 1})
    ui.drain()
    ui.press('n')
    ui.drain()

    ui.press(Keys.Enter)

    assert ui.app.background_tasks == []
    assert ui.value('form_editor').error == 'Subject is required'
    ui.press(Keys.Escape)
    assert ui.value('form_editor') is None
    assert client.created == []


def test_bulk_edit_updates_marked_issues(cache, build_ui):
    issues = [make_issue(n) for n in (10, 11, 12)]
    _seed(cache, issues)
    client = UIClient(issues=issues)
    ui = build_ui(cache, client, state={'selected_project_id': 1})
    ui.drain()

    # newest first: 12, 11, 10
    ui.press('x')
    ui.press('x')
    assert ui.value('marked') == {11, 12}
    ui.press('b')
    ui.drain()
    assert ui.value('form_editor').title == 'Bulk edit 2 issue(s)'

    ui.type('closed')
    ui.press(Keys.Enter)
    ui.drain()

    assert client.updates == [(11, {'status_id': 5}), (12, {'status_id': 5})]
    assert cache.fetch_issue_with_journals(11).status.name == 'Closed'
    assert cache.fetch_issue_with_journals(10).status.name == 'New'
    assert ui.value('marked') == set()
    assert ui.value('status_line') == 'Successfully updated 2 issue(s)'


def test_edit_form_from_detail_updates_issue(cache, build_ui):
    _seed(cache, [make_issue(10)])
    client = UIClient(issues=[make_issue(10)])
    ui = build_ui(cache, client, state={'selected_project_id': 1})
    ui.drain()
    ui.press(Keys.Enter)
    ui.drain()

    ui.press('e')
    ui.drain()
    assert ui.value('form_editor').title == 'Edit #10'
    ui.type('Looks good')
    ui.press(Keys.Enter)
    ui.drain()

    issue_id, payload = client.updates[0]
    assert issue_id == 10
    assert payload['notes'] == 'Looks good'
    assert payload['status_id'] == 1
    assert ui.value('form_editor') is None
    assert ui.value('detail_issue').journals[-1].notes == 'Looks good'
    assert cache.fetch_issue_with_journals(10).journals[-1].notes == 'Looks good'
