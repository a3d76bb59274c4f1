from __future__ import annotations

import pathlib
import ssl

import pytest

from testing.ssl import TLSFiles
from unixbridge.config import TLSClientConfig
from unixbridge.config import TLSConfig
from unixbridge.config import TLSServerConfig
from unixbridge.exceptions import ConfigurationError
from unixbridge.tls import client_context
from unixbridge.tls import server_context
from unixbridge.tls import TLSProfiles


def test_no_profile_disables_tls() -> None:
    profiles = TLSProfiles()
    assert profiles.client(None) is None
    assert profiles.server(None) is None


def test_resolve_profiles(tls_files: TLSFiles) -> None:
    profiles = TLSProfiles(tls_files.config)

    client = profiles.client('test')
    assert isinstance(client, ssl.SSLContext)
    assert client.verify_mode == ssl.CERT_REQUIRED
    assert client.check_hostname

    server = profiles.server('test')
    assert isinstance(server, ssl.SSLContext)
    assert server.verify_mode == ssl.CERT_REQUIRED


def test_client_insecure_skip_verify() -> None:
    context = client_context(TLSClientConfig(insecure_skip_verify=True))
    assert context.verify_mode == ssl.CERT_NONE
    assert not context.check_hostname


def test_server_without_client_verification(tls_files: TLSFiles) -> None:
    context = server_context(
        TLSServerConfig(
            certfile=tls_files.certfile,
            keyfile=tls_files.keyfile,
        ),
    )
    assert context.verify_mode == ssl.CERT_NONE


def test_unknown_profile() -> None:
    profiles = TLSProfiles()
    with pytest.raises(ConfigurationError, match='Unknown TLS client'):
        profiles.client('missing')
    with pytest.raises(ConfigurationError, match='Unknown TLS server'):
        profiles.server('missing')


def test_profile_with_missing_files(tmp_path: pathlib.Path) -> None:
    missing = str(tmp_path / 'missing.pem')
    profiles = TLSProfiles(
        TLSConfig(
            clients={'bad': TLSClientConfig(cafile=missing)},
            servers={'bad': TLSServerConfig(certfile=missing)},
        ),
    )
    with pytest.raises(ConfigurationError, match='Failed to load'):
        profiles.client('bad')
    with pytest.raises(ConfigurationError, match='Failed to load'):
        profiles.server('bad')
