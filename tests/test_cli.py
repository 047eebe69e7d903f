import pytest

from valet.cli import main


def run(valet_env, *argv):
    return main(list(argv), services=valet_env.app)


def test_use_switches_default_version(valet_env, capsys):
    assert run(valet_env, 'use', 'php@8.3') == 0
    assert "Valet is now using PHP 8.3." in capsys.readouterr().out
    assert valet_env.configuration.get('php_version') == '8.3'


def test_use_unsupported_version_hints_at_isolation(valet_env, capsys):
    assert run(valet_env, 'use', '7.4') == 1
    err = capsys.readouterr().err
    assert "Invalid version [7.4] used. Supported versions are: 8.2, 8.3" in err
    assert "valet isolate 7.4" in err
    assert "Traceback" not in err


def test_use_reports_install_failure_with_exit_code(valet_env, capsys):
    valet_env.packages.broken.add('php8.3-fpm')
    assert run(valet_env, 'use', '8.3') == 1
    err = capsys.readouterr().err
    assert "exit code 100" in err and "Unable to locate package" in err


def test_isolate_unisolate_and_listing(valet_env, capsys):
    valet_env.make_site('blog')

    assert run(valet_env, 'isolate', '7.4', '--site', 'blog', '--secure') == 0
    assert run(valet_env, 'isolated') == 0
    out = capsys.readouterr().out
    assert "blog.test" in out and "7.4" in out

    assert run(valet_env, 'which-php', 'blog') == 0
    assert capsys.readouterr().out.strip() == '/usr/bin/php7.4'

    assert run(valet_env, 'unisolate', '--site', 'blog') == 0
    assert "now using the default PHP version" in capsys.readouterr().out


def test_isolate_unknown_site_fails(valet_env, capsys):
    assert run(valet_env, 'isolate', '7.4', '--site', 'nope') == 1
    assert "The [nope] site could not be found" in capsys.readouterr().err


def test_domain_and_port(valet_env, capsys):
    assert run(valet_env, 'domain') == 0
    assert capsys.readouterr().out.strip() == 'test'

    assert run(valet_env, 'domain', 'dev') == 0
    assert run(valet_env, 'port', '8080') == 0
    assert run(valet_env, 'port', '4443', '--https') == 0
    params = valet_env.configuration.global_parameters()
    assert (params.domain, params.port, params.https_port) == ('dev', '8080', '4443')


def test_secure_unsecure_secured(valet_env, capsys):
    assert run(valet_env, 'secure', 'shop') == 0
    assert run(valet_env, 'secured') == 0
    assert "shop.test" in capsys.readouterr().out

    assert run(valet_env, 'secured', 'shop') == 0
    assert run(valet_env, 'unsecure', 'shop') == 0
    assert run(valet_env, 'secured', 'shop') == 1


def test_proxy_with_bad_url(valet_env, capsys):
    assert run(valet_env, 'proxy', 'app', 'ftp://example') == 1
    assert '"ftp://example" is not a valid URL' in capsys.readouterr().err


def test_regenerate_reports_skipped_sites(valet_env, capsys):
    valet_env.store.nginx_dir.mkdir(parents=True)
    valet_env.store.config_path('broken.test').write_text("no marker\n")

    assert run(valet_env, 'regenerate') == 1
    assert "Skipped broken.test" in capsys.readouterr().err


def test_domain_change_with_skipped_site_exits_non_zero(valet_env, capsys):
    valet_env.store.nginx_dir.mkdir(parents=True)
    valet_env.store.config_path('broken.test').write_text("no marker\n")

    assert run(valet_env, 'domain', 'dev') == 1
    captured = capsys.readouterr()
    assert "updated to [dev]" in captured.out
    assert "Skipped broken.test" in captured.err


def test_port_change_with_skipped_site_exits_non_zero(valet_env, capsys):
    valet_env.store.nginx_dir.mkdir(parents=True)
    valet_env.store.config_path('broken.test').write_text("no marker\n")

    assert run(valet_env, 'port', '8080') == 1
    assert "Skipped broken.test" in capsys.readouterr().err


def test_unisolate_site_that_is_not_isolated(valet_env, capsys):
    valet_env.make_site('blog')

    assert run(valet_env, 'unisolate', '--site', 'blog') == 0
    out = capsys.readouterr().out
    assert "The site [blog.test] is not isolated." in out
    assert "default PHP version" not in out


def test_missing_command_is_a_usage_error(valet_env):
    with pytest.raises(SystemExit) as exc:
        run(valet_env)
    assert exc.value.code == 2
