"""Shared fixtures: an in-memory data source, a recording notifier and a temp config."""

import copy

import pytest

from tiered_backup.config import build_config
from tiered_backup.source import SourceAdapter, SourceUnavailable


SAMPLE_DATASETS = {
    "items": [
        {"id": 1, "project": "alpha", "epic": "Core", "status": "done", "user_story": "As a user I can log in"},
        {"id": 2, "project": "alpha", "epic": "Core", "status": "in_progress", "user_story": "As a user I can log out"},
        {"id": 3, "project": "beta", "epic": "Reports", "status": "backlog", "user_story": "As an admin I can export"},
    ],
    "roles": [
        {"id": 10, "user_id": "u-1", "project": "alpha", "role": "admin"},
        {"id": 11, "user_id": "u-2", "project": "beta", "role": "viewer"},
    ],
    "orderings": [
        {"user_id": "u-1", "item_id": 2, "display_order": 0},
        {"user_id": "u-1", "item_id": 1, "display_order": 1},
    ],
}

ENV_VARS = [
    "BACKUP_ROOT",
    "BACKUP_CONFIG",
    "BACKUP_EMAIL_TO",
    "BACKUP_EMAIL_FROM",
    "BACKUP_EMAIL_USER",
    "BACKUP_EMAIL_PASSWORD",
    "BACKUP_TEAMS_WEBHOOK_URL",
    "SUPABASE_URL",
    "NEXT_PUBLIC_SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
]


class FakeSource(SourceAdapter):
    """In-memory store. Datasets in ``fail_on`` raise SourceUnavailable."""

    def __init__(self, datasets=None, fail_on=(), live_counts=None):
        super().__init__()
        self.datasets = copy.deepcopy(datasets if datasets is not None else SAMPLE_DATASETS)
        self.fail_on = set(fail_on)
        self.live_counts = dict(live_counts or {})
        self.fetch_calls = []

    def fetch_dataset(self, name):
        self.fetch_calls.append(name)
        if name in self.fail_on:
            raise SourceUnavailable(name, "connection refused")
        return copy.deepcopy(self.datasets.get(name, []))

    def count_dataset(self, name):
        if name in self.fail_on:
            raise SourceUnavailable(name, "connection refused")
        if name in self.live_counts:
            return self.live_counts[name]
        return len(self.datasets.get(name, []))


class RecordingNotifier:
    """Stands in for CompositeNotifier; records every event and what the policy let through."""

    def __init__(self):
        self.events = []
        self.delivered = []

    def notify(self, event, policy, force=False):
        self.events.append(event)
        if force or policy.should_deliver(event):
            self.delivered.append(event)
            return {"recording": True}
        return {}


@pytest.fixture
def clean_env(monkeypatch):
    """Remove backup-related environment variables."""
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def backup_root(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def backup_config(backup_root, clean_env):
    return build_config({"backup_root": str(backup_root)})


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def make_source():
    return FakeSource


@pytest.fixture
def recording_notifier():
    return RecordingNotifier()


@pytest.fixture
def config_file(tmp_path, backup_root):
    """Minimal YAML config pointing at the temp backup root."""
    path = tmp_path / "backup.yaml"
    path.write_text(f"backup_root: {backup_root}\ntimezone: Europe/London\nwindow_start_hour: 9\n")
    return path
