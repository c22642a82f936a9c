"""Tests for the Jinja2 template engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from forgectl.templates import TemplateEngine, TemplateError

SITE_CONTEXT = {
    "domain": "example.com",
    "document_root": "/home/forge/example.com/public",
    "php_socket": "/var/run/php/php8.3-fpm.sock",
    "ssl": False,
    "ssl_cert_path": None,
    "ssl_key_path": None,
}


def test_site_template_plain_http() -> None:
    """Non-SSL sites get a single port 80 server block."""
    engine = TemplateEngine.with_overrides(None)

    rendered = engine.render_to_string("nginx/site.conf.j2", SITE_CONTEXT)

    assert rendered.count("server {") == 1
    assert "server_name example.com www.example.com;" in rendered
    assert "root /home/forge/example.com/public;" in rendered
    assert "fastcgi_pass unix:/var/run/php/php8.3-fpm.sock;" in rendered
    assert "listen 443" not in rendered
    assert "Strict-Transport-Security" not in rendered


def test_site_template_ssl_redirects_http() -> None:
    """SSL sites serve on 443 and redirect port 80."""
    engine = TemplateEngine.with_overrides(None)

    rendered = engine.render_to_string(
        "nginx/site.conf.j2",
        {
            **SITE_CONTEXT,
            "ssl": True,
            "ssl_cert_path": "/etc/ssl/example.pem",
            "ssl_key_path": "/etc/ssl/example.key",
        },
    )

    assert rendered.count("server {") == 2
    assert rendered.count("listen 80;") == 1
    assert "ssl_certificate /etc/ssl/example.pem;" in rendered
    assert "return 301 https://$server_name$request_uri;" in rendered
    assert "Strict-Transport-Security" in rendered


def test_default_template_uses_public_directory() -> None:
    """The catch-all config roots at ``~/default`` plus the public subdir."""
    engine = TemplateEngine.with_overrides(None)

    rendered = engine.render_to_string(
        "nginx/default.conf.j2",
        {"app_user": "forge", "public_directory": "/public", "php_version": "8.2"},
    )

    assert "listen 80 default_server;" in rendered
    assert "root /home/forge/default/public;" in rendered
    assert "php8.2-fpm.sock" in rendered


def test_override_directory_shadows_builtin(tmp_path: Path) -> None:
    """Operator templates replace the packaged ones by relative name."""
    override = tmp_path / "templates" / "nginx"
    override.mkdir(parents=True)
    (override / "site.conf.j2").write_text("custom {{ domain }}\n", encoding="utf-8")

    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    assert engine.render_to_string("nginx/site.conf.j2", SITE_CONTEXT) == "custom example.com\n"
    assert "default_server" in engine.render_to_string(
        "nginx/default.conf.j2",
        {"app_user": "forge", "public_directory": "", "php_version": "8.3"},
    )


def test_missing_variable_raises_template_error() -> None:
    """Strict undefined turns missing context into TemplateError."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError, match="nginx/default.conf.j2"):
        engine.render_to_string("nginx/default.conf.j2", {"app_user": "forge"})


def test_unknown_template_raises_template_error() -> None:
    """Missing templates surface as TemplateError."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError):
        engine.render_to_string("nginx/missing.j2", {})
