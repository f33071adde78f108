import pytest

from connectors.base import CredentialError
from connectors.clickup import ClickUpConnector
from fakes import FakeStore, make_workspace
from services.credentials import decrypt_secret, encrypt_secret


def test_stored_key_decrypts_to_original() -> None:
    blob, iv = encrypt_secret("pk_123_ABC")

    assert blob != "pk_123_ABC"
    assert len(bytes.fromhex(iv)) == 12
    assert decrypt_secret(blob, iv) == "pk_123_ABC"


def test_each_encryption_uses_a_fresh_nonce() -> None:
    assert encrypt_secret("pk_123")[1] != encrypt_secret("pk_123")[1]


def test_wrong_nonce_is_a_credential_error() -> None:
    blob, _ = encrypt_secret("pk_123_ABC")

    with pytest.raises(CredentialError):
        decrypt_secret(blob, "00" * 12)


@pytest.mark.parametrize("blob,iv", [("", "abcd"), ("abcd", ""), ("!!not-base64!!", "00" * 12)])
def test_missing_or_corrupt_material_is_a_credential_error(blob, iv) -> None:
    with pytest.raises(CredentialError):
        decrypt_secret(blob, iv)


def test_empty_secret_cannot_be_stored() -> None:
    with pytest.raises(CredentialError):
        encrypt_secret("")


def test_connector_for_workspace_uses_decrypted_key() -> None:
    blob, iv = encrypt_secret("pk_live_key")
    workspace = make_workspace(encrypted_api_key=blob, api_key_iv=iv)

    connector = ClickUpConnector.for_workspace(workspace, FakeStore())

    assert connector.client._http.headers["authorization"] == "pk_live_key"
    assert connector.workspace_id == str(workspace.id)


def test_connector_for_workspace_with_bad_key_raises() -> None:
    workspace = make_workspace(encrypted_api_key="blob", api_key_iv="iv")

    with pytest.raises(CredentialError):
        ClickUpConnector.for_workspace(workspace, FakeStore())
