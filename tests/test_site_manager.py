import pytest

from valet.core.errors import InvalidProxyUrlError, SiteNotFoundError
from valet.managers.nginx_manager import IsolatedMode, PlainMode, ProxyMode


def test_secure_and_unsecure_keep_certificate_invariant(valet_env):
    sites = valet_env.sites
    record = sites.secure('foo')

    assert record.hostname == 'foo.test'
    assert valet_env.certificates.record('foo.test').exists
    assert 'foo.test' in sites.secured()

    sites.unsecure('foo.test')
    sites.unsecure('foo.test')

    assert not any(p.exists() for p in valet_env.certificates.record('foo.test').paths)
    assert 'foo.test' not in sites.secured()
    assert not valet_env.store.exists('foo.test')


def test_secure_keeps_existing_mode(valet_env, params):
    valet_env.store.write('api.test', ProxyMode('http://localhost:3000'), False, params)

    record = valet_env.sites.secure('api')

    assert record.mode == ProxyMode('http://localhost:3000')
    assert valet_env.store.derive('api.test').secured is True


def test_unsecure_preserves_isolation(valet_env, params):
    valet_env.certificates.issue_leaf('iso.test')
    valet_env.store.write('iso.test', IsolatedMode('8.1'), True, params)

    record = valet_env.sites.unsecure('iso')

    assert record.mode == IsolatedMode('8.1')
    assert record.secured is False
    assert valet_env.store.derive('iso.test').secured is False


def test_proxy_lifecycle(valet_env):
    sites = valet_env.sites
    record = sites.proxy('app', 'http://127.0.0.1:5173', secure=True)

    assert record.secured is True
    assert [r.hostname for r in sites.proxies()] == ['app.test']
    assert "proxy_pass http://127.0.0.1:5173;" in record.config_path.read_text()

    assert sites.unproxy('app') is True
    assert sites.proxies() == []
    assert not valet_env.certificates.is_secured('app.test')


@pytest.mark.parametrize("url", [
    'localhost:3000',
    'http://localhost:9000/a;b',
    'http://localhost:9000/{x}',
    'http://localhost:9000/"x"',
    "http://localhost:9000/'x'",
    'http://localhost:9000/a b',
])
def test_proxy_rejects_urls_nginx_cannot_take_unquoted(valet_env, url):
    with pytest.raises(InvalidProxyUrlError):
        valet_env.sites.proxy('app', url)
    assert valet_env.store.hostnames() == []


def test_proxy_url_with_query_survives_derive(valet_env):
    valet_env.sites.proxy('api', 'http://localhost:9000/a?b=1&c=%3B')
    assert valet_env.store.derive('api.test').mode == ProxyMode('http://localhost:9000/a?b=1&c=%3B')


def test_links_and_parked_paths(valet_env, tmp_path):
    linked = valet_env.make_site('blog')
    parked_root = tmp_path / 'code'
    (parked_root / 'shop').mkdir(parents=True)
    (parked_root / 'notes.txt').write_text("not a site")
    valet_env.configuration.add_path(str(parked_root))

    assert valet_env.sites.links() == {'blog': linked.resolve()}
    assert valet_env.sites.sites() == {'blog': linked.resolve(), 'shop': parked_root / 'shop'}
    assert valet_env.sites.resolve('shop.test') == 'shop'
    assert valet_env.sites.resolve(None, cwd=linked) == 'blog'
    with pytest.raises(SiteNotFoundError):
        valet_env.sites.resolve('notes.txt')


def test_unlink_also_unsecures(valet_env):
    valet_env.make_site('blog')
    valet_env.sites.secure('blog')

    assert valet_env.sites.unlink('blog') is True
    assert valet_env.sites.links() == {}
    assert not valet_env.certificates.is_secured('blog.test')


def test_prune_links_removes_dangling_symlinks(valet_env):
    directory = valet_env.make_site('gone')
    directory.rmdir()

    assert valet_env.sites.prune_links() == ['gone']
    assert valet_env.sites.links() == {}


def test_malformed_site_is_treated_as_plain_when_securing(valet_env):
    valet_env.store.nginx_dir.mkdir(parents=True)
    valet_env.store.config_path('odd.test').write_text("server { listen 80; }\n")

    record = valet_env.sites.secure('odd')

    assert record.mode == PlainMode()
    assert record.secured is True
