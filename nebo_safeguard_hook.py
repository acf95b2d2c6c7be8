#!/usr/bin/env python3
# Dependencies: bashlex, pyyaml
# Install with: pip install bashlex pyyaml

"""
Nebo Safeguard Hook - PreToolUse adapter for the safeguard
Reads a tool call as JSON on stdin and answers with an allow/deny decision
"""

import json
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from nebo_safeguard import Denial, check_safeguard, data_root


CONFIG_ENV = 'NEBO_SAFEGUARD_CONFIG'


# ============================================================================
# Configuration Management
# ============================================================================

class ConfigManager:
    """Loads hook configuration; nothing here can relax the safeguard itself"""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or self._default_path()
        self.config = self._load_config()

    @staticmethod
    def _default_path() -> Path:
        override = os.environ.get(CONFIG_ENV)
        if override:
            return Path(override).expanduser()
        return Path(__file__).parent / 'nebo_safeguard_config.yaml'

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration and merge it over the defaults"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                user_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError):
            user_config = {}

        if not isinstance(user_config, dict):
            user_config = {}
        # An empty 'system_config:' key loads as None
        if not isinstance(user_config.get('system_config', {}), dict):
            user_config = {k: v for k, v in user_config.items() if k != 'system_config'}

        defaults = {
            'system_config': {
                'debug_mode': False,
                'log_denials': True,
                'log_approvals': False,
                'log_dir': None,
                'max_log_entries': 100,
            }
        }

        return self._deep_merge(defaults, user_config)

    def _deep_merge(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dictionaries"""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def get_system_config(self, option: str, default: Any = None) -> Any:
        """Get system configuration value"""
        return self.config.get('system_config', {}).get(option, default)


# ============================================================================
# Decision Logging
# ============================================================================

class DecisionLogger:
    """Keeps the most recent safeguard decisions as JSON files"""

    def __init__(self, config: ConfigManager):
        self.config = config
        self.log_dir = self._resolve_log_dir()

    def _resolve_log_dir(self) -> Path:
        configured = self.config.get_system_config('log_dir')
        if configured:
            return Path(configured).expanduser()

        root = data_root()
        if root:
            return Path(root) / 'logs'
        return Path(__file__).parent / 'logs'

    def log_decision(self, tool_name: str, tool_input: Any, denial: Optional[Denial]):
        """Log a safeguard decision"""
        allowed = denial is None
        should_log = self.config.get_system_config(
            'log_approvals' if allowed else 'log_denials',
            not allowed
        )

        if not should_log:
            return

        entry = {
            'timestamp': datetime.now().isoformat(),
            'tool': tool_name,
            'target': denial.target if denial else _describe_target(tool_input),
            'action': 'approved' if allowed else 'rejected',
            'reason': denial.reason if denial else 'Safeguard checks passed',
            'cwd': os.getcwd(),
        }

        filename = 'permission_approvals.json' if allowed else 'permission_denials.json'
        log_file = self.log_dir / filename

        logs = self._read_logs(log_file)
        logs.append(entry)

        max_entries = max(1, int(self.config.get_system_config('max_log_entries', 100)))
        if len(logs) > max_entries:
            logs = logs[-max_entries:]

        self.log_dir.mkdir(parents=True, exist_ok=True)
        with open(log_file, 'w', encoding='utf-8') as f:
            json.dump(logs, f, indent=2)

    @staticmethod
    def _read_logs(log_file: Path) -> list:
        if not log_file.exists():
            return []
        try:
            with open(log_file, 'r', encoding='utf-8') as f:
                logs = json.load(f)
        except (OSError, ValueError):
            return []
        return logs if isinstance(logs, list) else []


def _describe_target(tool_input: Any) -> str:
    if isinstance(tool_input, dict):
        for key in ('command', 'path'):
            value = tool_input.get(key)
            if isinstance(value, str) and value:
                return value
    return ''


# ============================================================================
# Entry Point
# ============================================================================

def main():
    """Main entry function"""
    try:
        input_data = json.load(sys.stdin)
        tool_name = input_data.get('tool_name', '')
        tool_input = input_data.get('tool_input', {})

        # Decided before any configuration is read
        denial = check_safeguard(tool_name, tool_input)

        # Config or log trouble must not turn a denial into the fail-open path below
        try:
            config = ConfigManager()

            if config.get_system_config('debug_mode', False):
                print(f"DEBUG: Tool: {tool_name}", file=sys.stderr)
                print(f"DEBUG: Current working directory: {os.getcwd()}", file=sys.stderr)
                print(f"DEBUG: Input: {json.dumps(tool_input)}", file=sys.stderr)

            DecisionLogger(config).log_decision(tool_name, tool_input, denial)
        except (AttributeError, OSError, TypeError, ValueError) as e:
            print(f"Safeguard decision log failed: {e}", file=sys.stderr)

        response = {
            "hookSpecificOutput": {
                "hookEventName": "PreToolUse",
                "permissionDecision": "allow" if denial is None else "deny",
                "permissionDecisionReason": "Safeguard checks passed" if denial is None else denial.message
            }
        }

        print(json.dumps(response))
        sys.exit(0 if denial is None else 2)

    except Exception as e:
        # On error, allow execution
        print(f"Hook execution error: {str(e)}", file=sys.stderr)
        sys.exit(0)


if __name__ == '__main__':
    main()
