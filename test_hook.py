"""Tests for the PreToolUse hook adapter, its configuration and decision logs."""

import io
import json

import pytest
import yaml

import nebo_safeguard_hook
from nebo_safeguard import Denial
from nebo_safeguard_hook import ConfigManager, DecisionLogger


SUDO_CALL = {
    'tool_name': 'shell',
    'tool_input': {'resource': 'bash', 'action': 'exec', 'command': 'sudo ls'},
}

READ_CALL = {
    'tool_name': 'file',
    'tool_input': {'action': 'read', 'path': '/etc/hosts'},
}


@pytest.fixture
def log_dir(tmp_path):
    return tmp_path / 'logs'


@pytest.fixture
def write_config(tmp_path, monkeypatch, log_dir):
    """Write a hook config file and point NEBO_SAFEGUARD_CONFIG at it"""
    def write(**system_config):
        settings = {'log_dir': str(log_dir), 'log_approvals': True}
        settings.update(system_config)
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump({'system_config': settings}), encoding='utf-8')
        monkeypatch.setenv('NEBO_SAFEGUARD_CONFIG', str(path))
        return path
    return write


def run_hook(monkeypatch, stdin_text):
    monkeypatch.setattr('sys.stdin', io.StringIO(stdin_text))
    with pytest.raises(SystemExit) as exc:
        nebo_safeguard_hook.main()
    return exc.value.code


def read_log(log_dir, name):
    with open(log_dir / name, encoding='utf-8') as f:
        return json.load(f)


# -------------------------------------------------------------------
# Hook entry point
# -------------------------------------------------------------------


class TestMain:

    def test_denied_call(self, monkeypatch, capsys, write_config, log_dir):
        write_config()
        code = run_hook(monkeypatch, json.dumps(SUDO_CALL))

        assert code == 2
        output = json.loads(capsys.readouterr().out)['hookSpecificOutput']
        assert output['hookEventName'] == 'PreToolUse'
        assert output['permissionDecision'] == 'deny'
        assert output['permissionDecisionReason'].startswith('BLOCKED: sudo is not permitted')

        entries = read_log(log_dir, 'permission_denials.json')
        assert len(entries) == 1
        assert entries[0]['tool'] == 'shell'
        assert entries[0]['target'] == 'sudo ls'
        assert entries[0]['action'] == 'rejected'
        assert entries[0]['reason'] == 'sudo is not permitted'

    def test_allowed_call(self, monkeypatch, capsys, write_config, log_dir):
        write_config()
        code = run_hook(monkeypatch, json.dumps(READ_CALL))

        assert code == 0
        output = json.loads(capsys.readouterr().out)['hookSpecificOutput']
        assert output['permissionDecision'] == 'allow'

        entries = read_log(log_dir, 'permission_approvals.json')
        assert entries[0]['action'] == 'approved'
        assert entries[0]['target'] == '/etc/hosts'

    def test_unknown_tool_allowed(self, monkeypatch, capsys, write_config):
        write_config()
        call = {'tool_name': 'web', 'tool_input': {'url': 'https://example.com'}}
        assert run_hook(monkeypatch, json.dumps(call)) == 0

    def test_invalid_json_fails_open(self, monkeypatch, capsys, write_config):
        write_config()
        assert run_hook(monkeypatch, '{not json') == 0
        assert 'Hook execution error' in capsys.readouterr().err

    def test_non_object_input_fails_open(self, monkeypatch, capsys, write_config):
        write_config()
        assert run_hook(monkeypatch, '[1, 2]') == 0

    def test_debug_mode(self, monkeypatch, capsys, write_config):
        write_config(debug_mode=True)
        run_hook(monkeypatch, json.dumps(SUDO_CALL))
        err = capsys.readouterr().err
        assert 'DEBUG: Tool: shell' in err
        assert 'DEBUG: Current working directory' in err

    def test_empty_system_config_keeps_denial(self, monkeypatch, capsys, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text('system_config:\n  # debug_mode: true\n', encoding='utf-8')
        monkeypatch.setenv('NEBO_SAFEGUARD_CONFIG', str(path))
        monkeypatch.setenv('NEBO_DATA_DIR', str(tmp_path / 'nebo'))

        call = dict(SUDO_CALL, tool_input=dict(SUDO_CALL['tool_input'], command='sudo rm -rf /'))
        assert run_hook(monkeypatch, json.dumps(call)) == 2
        output = json.loads(capsys.readouterr().out)['hookSpecificOutput']
        assert output['permissionDecision'] == 'deny'

    def test_broken_config_keeps_denial(self, monkeypatch, capsys, write_config):
        write_config(max_log_entries='many')

        assert run_hook(monkeypatch, json.dumps(SUDO_CALL)) == 2
        captured = capsys.readouterr()
        assert json.loads(captured.out)['hookSpecificOutput']['permissionDecision'] == 'deny'
        assert 'Safeguard decision log failed' in captured.err

    def test_unwritable_log_keeps_denial(self, monkeypatch, capsys, write_config, tmp_path):
        blocker = tmp_path / 'not-a-dir'
        blocker.write_text('x', encoding='utf-8')
        write_config(log_dir=str(blocker / 'logs'))

        assert run_hook(monkeypatch, json.dumps(SUDO_CALL)) == 2
        captured = capsys.readouterr()
        assert json.loads(captured.out)['hookSpecificOutput']['permissionDecision'] == 'deny'
        assert 'Safeguard decision log failed' in captured.err


# -------------------------------------------------------------------
# Configuration
# -------------------------------------------------------------------


class TestConfigManager:

    def test_missing_file_uses_defaults(self, tmp_path):
        config = ConfigManager(tmp_path / 'missing.yaml')
        assert config.get_system_config('debug_mode') is False
        assert config.get_system_config('log_denials') is True
        assert config.get_system_config('log_approvals') is False
        assert config.get_system_config('max_log_entries') == 100

    def test_partial_config_is_merged(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text('system_config:\n  debug_mode: true\n', encoding='utf-8')
        config = ConfigManager(path)
        assert config.get_system_config('debug_mode') is True
        assert config.get_system_config('log_denials') is True

    @pytest.mark.parametrize("content", [
        'system_config: [unclosed',
        '- just\n- a list\n',
        '',
        'system_config:\n',
        'system_config:\n  # debug_mode: true\n',
        'system_config: verbose\n',
    ])
    def test_unusable_config_uses_defaults(self, tmp_path, content):
        path = tmp_path / 'config.yaml'
        path.write_text(content, encoding='utf-8')
        config = ConfigManager(path)
        assert config.get_system_config('log_denials') is True
        assert config.get_system_config('max_log_entries') == 100

    def test_environment_override(self, tmp_path, monkeypatch):
        path = tmp_path / 'elsewhere.yaml'
        path.write_text('system_config:\n  max_log_entries: 7\n', encoding='utf-8')
        monkeypatch.setenv('NEBO_SAFEGUARD_CONFIG', str(path))
        assert ConfigManager().get_system_config('max_log_entries') == 7

    def test_unknown_sections_kept(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text('extra:\n  key: value\n', encoding='utf-8')
        assert ConfigManager(path).config['extra'] == {'key': 'value'}


# -------------------------------------------------------------------
# Decision logs
# -------------------------------------------------------------------


class TestDecisionLogger:

    DENIAL = Denial(action='exec', target='sudo ls', reason='sudo is not permitted', message='BLOCKED')

    def test_keeps_most_recent_entries(self, write_config, log_dir):
        logger = DecisionLogger(ConfigManager(write_config(max_log_entries=3)))
        for i in range(5):
            denial = Denial(action='exec', target=f'sudo {i}', reason='sudo is not permitted', message='BLOCKED')
            logger.log_decision('shell', {}, denial)

        entries = read_log(log_dir, 'permission_denials.json')
        assert [e['target'] for e in entries] == ['sudo 2', 'sudo 3', 'sudo 4']

    @pytest.mark.parametrize("limit", [0, -5])
    def test_non_positive_limit_keeps_latest_entry(self, write_config, log_dir, limit):
        logger = DecisionLogger(ConfigManager(write_config(max_log_entries=limit)))
        for i in range(3):
            denial = Denial(action='exec', target=f'sudo {i}', reason='sudo is not permitted', message='BLOCKED')
            logger.log_decision('shell', {}, denial)

        entries = read_log(log_dir, 'permission_denials.json')
        assert [e['target'] for e in entries] == ['sudo 2']

    def test_denials_not_logged_when_disabled(self, write_config, log_dir):
        logger = DecisionLogger(ConfigManager(write_config(log_denials=False)))
        logger.log_decision('shell', {}, self.DENIAL)
        assert not (log_dir / 'permission_denials.json').exists()

    def test_approvals_not_logged_when_disabled(self, write_config, log_dir):
        logger = DecisionLogger(ConfigManager(write_config(log_approvals=False)))
        logger.log_decision('file', {'action': 'read', 'path': '/etc/hosts'}, None)
        assert not (log_dir / 'permission_approvals.json').exists()

    def test_corrupt_log_is_replaced(self, write_config, log_dir):
        log_dir.mkdir()
        (log_dir / 'permission_denials.json').write_text('{broken', encoding='utf-8')

        logger = DecisionLogger(ConfigManager(write_config()))
        logger.log_decision('shell', {}, self.DENIAL)
        assert len(read_log(log_dir, 'permission_denials.json')) == 1

    def test_default_log_dir_under_data_root(self, tmp_path, monkeypatch):
        monkeypatch.setenv('NEBO_DATA_DIR', str(tmp_path / 'nebo'))
        logger = DecisionLogger(ConfigManager(tmp_path / 'missing.yaml'))
        assert logger.log_dir == tmp_path / 'nebo' / 'logs'
