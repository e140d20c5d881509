import datetime as dt
import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import rm_issue_viewer as rmv  # noqa: E402


BASE_TS = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)


def ts(minutes: int = 0) -> dt.datetime:
    return BASE_TS + dt.timedelta(minutes=minutes)


def make_project(project_id: int, name: str = None, **overrides) -> rmv.Project:
    base = {
        'id': project_id,
        'name': name or f'Project {project_id}',
        'identifier': f'proj-{project_id}',
        'description': None,
        'created_on': ts(0),
        'updated_on': ts(0),
    }
    base.update(overrides)
    return rmv.Project(**base)


def make_issue(issue_id: int, project_id: int = 1, **overrides) -> rmv.Issue:
    base = {
        'id': issue_id,
        'project': rmv.IdName(project_id, ''),
        'tracker': rmv.IdName(1, 'Bug'),
        'status': rmv.IdName(1, 'New'),
        'priority': rmv.IdName(2, 'Normal'),
        'author': rmv.IdName(1, 'Ada Admin'),
        'subject': f'Issue {issue_id}',
        'created_on': ts(0),
        'updated_on': ts(issue_id),
    }
    base.update(overrides)
    return rmv.Issue(**base)


def issue_json(issue_id: int, project_id: int = 1, updated: str = '2024-01-01T10:00:00Z', **extra) -> dict:
    data = {
        'id': issue_id,
        'project': {'id': project_id, 'name': f'Project {project_id}'},
        'tracker': {'id': 1, 'name': 'Bug'},
        'status': {'id': 1, 'name': 'New'},
        'priority': {'id': 2, 'name': 'Normal'},
        'author': {'id': 1, 'name': 'Ada Admin'},
        'subject': f'Issue {issue_id}',
        'created_on': '2024-01-01T00:00:00Z',
        'updated_on': updated,
    }
    data.update(extra)
    return data


@pytest.fixture
def cache(tmp_path):
    store = rmv.IssueCache(str(tmp_path / 'issues.db'))
    yield store
    store.close()


@pytest.fixture
def mem_cache():
    store = rmv.IssueCache(':memory:')
    yield store
    store.close()
