import pytest

from valet.core.errors import MalformedSiteConfigError
from valet.managers.nginx_manager import (
    IsolatedMode, PlainMode, ProxyMode, decode_site_config, encode_markers,
)

MODES = [PlainMode(), ProxyMode('http://127.0.0.1:8080'), IsolatedMode('7.4')]


@pytest.mark.parametrize("mode", MODES, ids=lambda m: m.stub)
@pytest.mark.parametrize("secured", [False, True], ids=["http", "https"])
def test_write_then_derive_returns_same_mode(valet_env, params, mode, secured):
    store = valet_env.store
    store.write('site.test', mode, secured, params)

    record = store.derive('site.test')
    assert record.mode == mode
    assert record.secured is secured
    assert record.config_path == store.config_path('site.test')


def test_marker_is_first_line(valet_env, params):
    valet_env.store.write('site.test', IsolatedMode('7.4'), True, params)
    lines = valet_env.store.config_path('site.test').read_text().splitlines()

    assert lines[0] == "# valet stub: secure.isolated.valet.conf"
    assert lines[1] == "# ISOLATED_PHP_VERSION=7.4"


def test_encode_markers():
    assert encode_markers(PlainMode(), False) == "# valet stub: plain.valet.conf\n"
    assert encode_markers(ProxyMode('http://x'), True) == "# valet stub: secure.proxy.valet.conf\n"


def test_decode_legacy_secure_marker():
    mode, secured = decode_site_config('old.test', "\n# valet stub: secure.valet.conf\nserver {}\n")
    assert mode == PlainMode()
    assert secured is True


@pytest.mark.parametrize("text", [
    "server { listen 80; }\n",
    "# valet stub: proxy.valet.conf\nserver { location / { } }\n",
    "# valet stub: isolated.valet.conf\nserver {}\n",
])
def test_decode_rejects_unrecoverable_files(text):
    with pytest.raises(MalformedSiteConfigError):
        decode_site_config('bad.test', text)


def test_derive_missing_file_is_none(valet_env):
    assert valet_env.store.derive('nothing.test') is None


def test_render_substitutes_sockets_ports_and_certificates(valet_env, params):
    store = valet_env.store
    custom = params.with_changes(port='8080', https_port='4443')

    plain = store.render('site.test', PlainMode(), True, custom)
    assert "listen 8080;" in plain
    assert "listen 4443 ssl" in plain
    assert "return 301 https://$host:4443$request_uri;" in plain
    assert str(store.home / 'valet82.sock') in plain
    assert str(valet_env.certificates.record('site.test').crt_path) in plain
    assert "VALET_" not in plain

    isolated = store.render('site.test', IsolatedMode('7.4'), False, params)
    assert str(store.home / 'valet74.sock') in isolated
    assert "valet82.sock" not in isolated


def test_default_https_port_has_no_redirect_suffix(valet_env, params):
    text = valet_env.store.render('site.test', PlainMode(), True, params)
    assert "return 301 https://$host$request_uri;" in text


def test_regenerate_all_is_idempotent(valet_env, params):
    store = valet_env.store
    valet_env.certificates.issue_leaf('secure.test')
    store.write('secure.test', PlainMode(), True, params)
    store.write('proxy.test', ProxyMode('http://localhost:3000'), False, params)
    store.write('iso.test', IsolatedMode('8.1'), False, params)

    changed = params.with_changes(port='8080')
    store.regenerate_all(changed)
    first = {h: store.config_path(h).read_bytes() for h in store.hostnames()}
    store.regenerate_all(changed)
    second = {h: store.config_path(h).read_bytes() for h in store.hostnames()}

    assert first == second
    assert all(b"listen 8080;" in content for content in second.values())


def test_regenerate_uses_certificate_directory_for_tls_state(valet_env, params):
    store = valet_env.store
    valet_env.certificates.issue_leaf('nofile.test')
    valet_env.certificates.issue_leaf('iso.test')
    store.write('iso.test', IsolatedMode('8.1'), False, params)

    report = store.regenerate_all(params)

    assert sorted(report.written) == ['iso.test', 'nofile.test']
    assert store.derive('nofile.test').mode == PlainMode()
    assert store.derive('nofile.test').secured is True
    iso = store.derive('iso.test')
    assert iso.mode == IsolatedMode('8.1') and iso.secured is True


def test_regenerate_skips_malformed_sites_and_continues(valet_env, params):
    store = valet_env.store
    store.write('good.test', ProxyMode('http://localhost:3000'), False, params)
    store.nginx_dir.joinpath('broken.test').write_text("# valet stub: proxy.valet.conf\nserver {}\n")

    report = store.regenerate_all(params.with_changes(port='8081'))

    assert report.written == ['good.test']
    assert 'broken.test' in report.skipped
    assert "listen 8081;" in store.config_path('good.test').read_text()
    assert store.config_path('broken.test').read_text() == "# valet stub: proxy.valet.conf\nserver {}\n"


def test_install_server_links_catch_all(valet_env, params):
    path = valet_env.nginx.install_server(params.with_changes(port='8080'))

    text = path.read_text()
    assert "listen 8080 default_server;" in text
    assert str(valet_env.store.home / 'valet82.sock') in text
    enabled = valet_env.nginx.sites_enabled / 'valet.conf'
    assert enabled.is_symlink() and enabled.resolve() == path.resolve()
