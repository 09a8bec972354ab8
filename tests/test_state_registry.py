"""State registry helpers tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from apprunner.state import StateRegistry, StateRegistryError


def test_read_missing_files_returns_default(tmp_path: Path) -> None:
    """Missing files return the provided default structure."""
    registry = StateRegistry(tmp_path)

    result = registry.read("apps.yml", default={"apps": []})

    assert result == {"apps": []}


def test_write_and_read_roundtrip(tmp_path: Path) -> None:
    """Writing a registry file and reading it back succeeds."""
    registry = StateRegistry(tmp_path / "registry")
    payload = {"apps": [{"name": "shop", "git_url": "https://example.com/shop.git"}]}

    registry.write("apps.yml", payload)

    path = tmp_path / "registry" / "apps.yml"
    assert path.exists()
    assert (path.stat().st_mode & 0o777) == 0o640
    assert [p.name for p in path.parent.iterdir()] == ["apps.yml"]

    loaded = registry.read("apps.yml")
    assert loaded == payload


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a StateRegistryError."""
    registry = StateRegistry(tmp_path)
    (tmp_path / "apps.yml").write_text("apps: [unclosed\n")

    with pytest.raises(StateRegistryError):
        registry.read("apps.yml")


def test_app_upsert_get_and_remove(tmp_path: Path) -> None:
    """App helpers normalise, replace and delete entries."""
    registry = StateRegistry(tmp_path)

    assert registry.read_apps() == {"apps": []}
    assert registry.list_apps() == []

    registry.upsert_app({"name": " shop ", "git_url": "https://example.com/shop.git "})
    registry.upsert_app({"name": "blog", "git_url": "/srv/git/blog"})
    registry.upsert_app({"name": "shop", "git_url": "https://example.com/shop-v2.git"})

    assert [entry["name"] for entry in registry.list_apps()] == ["shop", "blog"]
    shop = registry.get_app("shop")
    assert shop is not None
    assert shop["git_url"] == "https://example.com/shop-v2.git"
    assert registry.get_app("missing") is None

    registry.remove_app("shop")

    assert [entry["name"] for entry in registry.list_apps()] == ["blog"]
    with pytest.raises(StateRegistryError, match="not found"):
        registry.remove_app("shop")


@pytest.mark.parametrize(
    "entry",
    [{"git_url": "https://example.com/x.git"}, {"name": "x"}, {"name": " ", "git_url": "u"}],
)
def test_upsert_requires_name_and_url(tmp_path: Path, entry: dict[str, str]) -> None:
    """Entries without a name or Git URL are rejected."""
    with pytest.raises(StateRegistryError):
        StateRegistry(tmp_path).upsert_app(entry)


def test_list_apps_skips_malformed_entries(tmp_path: Path) -> None:
    """Hand-edited files with broken entries do not break listing."""
    registry = StateRegistry(tmp_path)
    registry.write(
        "apps.yml",
        {
            "apps": [
                "just a string",
                {"name": "no-url"},
                {"name": "shop", "git_url": "https://example.com/shop.git", "added_at": "x"},
            ]
        },
    )

    assert registry.list_apps() == [
        {"name": "shop", "git_url": "https://example.com/shop.git", "added_at": "x"}
    ]


def test_non_list_apps_value_is_ignored(tmp_path: Path) -> None:
    """A corrupted ``apps`` value yields no entries."""
    registry = StateRegistry(tmp_path)
    registry.write("apps.yml", {"apps": {"shop": "oops"}})

    assert registry.list_apps() == []
