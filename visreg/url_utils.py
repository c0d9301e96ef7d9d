"""Shared URL utilities — build the target URL for a test case."""

from __future__ import annotations

from urllib.parse import urljoin


def render_endpoint(endpoint: str, group: str, label: str) -> str:
    """Fill the `<group>` / `<label>` placeholders of an endpoint template."""
    return endpoint.replace("<group>", group).replace("<label>", label)


def resolve_test_url(
    base_url: str, endpoint: str, group: str, label: str, path: str | None = None,
) -> str:
    """Absolute URL for a test. An explicit test path replaces the template."""
    target = path if path is not None else render_endpoint(endpoint, group, label)
    if not base_url:
        return target
    if not base_url.endswith("/"):
        base_url += "/"
    return urljoin(base_url, target.lstrip("/"))
