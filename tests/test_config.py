import logging

import pytest

import rm_issue_viewer as rmv


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    monkeypatch.delenv('REDMINE_URL', raising=False)
    monkeypatch.delenv('REDMINE_API_KEY', raising=False)
    # keep .env lookups away from the developer's checkout
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(rmv, 'load_dotenv_api_key', lambda: None)


def test_missing_config_returns_defaults(tmp_path):
    cfg = rmv.load_config(str(tmp_path / 'absent.yml'))
    assert cfg == rmv.Config()
    assert not cfg.is_configured()


def test_yaml_values_are_loaded(tmp_path):
    path = tmp_path / 'config.yml'
    path.write_text(
        'redmine_url: https://redmine.example.com\n'
        'api_key: abc\n'
        'exclude_subprojects: false\n'
        'page_size: 50\n',
        encoding='utf-8',
    )
    cfg = rmv.load_config(str(path))
    assert cfg.redmine_url == 'https://redmine.example.com'
    assert cfg.api_key == 'abc'
    assert cfg.exclude_subprojects is False
    assert cfg.page_size == 50
    assert cfg.is_configured()


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / 'config.yml'
    path.write_text('redmine_url: https://file.example.com\napi_key: from-file\n', encoding='utf-8')
    monkeypatch.setenv('REDMINE_URL', 'https://env.example.com')
    monkeypatch.setenv('REDMINE_API_KEY', 'from-env')
    cfg = rmv.load_config(str(path))
    assert cfg.redmine_url == 'https://env.example.com'
    assert cfg.api_key == 'from-env'


def test_non_mapping_config_is_rejected(tmp_path):
    path = tmp_path / 'config.yml'
    path.write_text('- just\n- a list\n', encoding='utf-8')
    with pytest.raises(ValueError):
        rmv.load_config(str(path))


def test_negative_page_size_is_rejected(tmp_path):
    path = tmp_path / 'config.yml'
    path.write_text('page_size: -5\n', encoding='utf-8')
    with pytest.raises(ValueError, match='page_size'):
        rmv.load_config(str(path))


def test_page_size_is_capped_at_server_limit(tmp_path):
    path = tmp_path / 'config.yml'
    path.write_text('page_size: 500\n', encoding='utf-8')
    assert rmv.load_config(str(path)).page_size == rmv.MAX_PAGE_SIZE == 100


def test_dotenv_api_key_is_read(tmp_path, monkeypatch):
    monkeypatch.undo()
    monkeypatch.delenv('REDMINE_API_KEY', raising=False)
    monkeypatch.chdir(tmp_path)
    (tmp_path / '.env').write_text('# comment\nOTHER=1\nREDMINE_API_KEY="dotenv-key"\n', encoding='utf-8')
    assert rmv.load_dotenv_api_key() == 'dotenv-key'
    assert rmv.load_config(str(tmp_path / 'absent.yml')).api_key == 'dotenv-key'


def test_setup_logging_resets_handlers(tmp_path):
    log_path = tmp_path / 'logs' / 'viewer.log'
    rmv.setup_logging('DEBUG', str(log_path))
    log = rmv.setup_logging('WARNING', str(log_path))
    try:
        assert len(log.handlers) == 1
        assert log.handlers[0].level == logging.WARNING
        log.warning('hello')
        log.handlers[0].flush()
        assert 'hello' in log_path.read_text(encoding='utf-8')
    finally:
        for h in list(log.handlers):
            log.removeHandler(h)
            h.close()


def test_ui_state_round_trips(tmp_path):
    path = str(tmp_path / 'ui.json')
    state = rmv.ViewState(project_filter='alp', sort_order=rmv.IssueSortOrder.STATUS_DESC,
                          my_issues_only=True, current_user_id=9, selected_project_id=4, group_by_status=True,
                          collapsed_statuses={'Closed'})
    rmv._save_ui_state(path, state)
    loaded = rmv._load_ui_state(path)
    assert loaded.project_filter == 'alp'
    assert loaded.sort_order is rmv.IssueSortOrder.STATUS_DESC
    assert loaded.my_issues_only is True
    assert loaded.current_user_id == 9
    assert loaded.selected_project_id == 4
    assert loaded.collapsed_statuses == {'Closed'}


def test_ui_state_tolerates_garbage(tmp_path):
    path = tmp_path / 'ui.json'
    path.write_text('{"sort_order": "sideways"}', encoding='utf-8')
    assert rmv._load_ui_state(str(path)).sort_order is rmv.IssueSortOrder.UPDATED_DESC
    path.write_text('not json', encoding='utf-8')
    assert rmv._load_ui_state(str(path)) == rmv.ViewState()
