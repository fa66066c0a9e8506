import jwt
import pytest

from config import get_settings
from database import DBSession
from errors import DECRYPTION_FAILED_MESSAGE, ErrorKind, RelayError
from models import BuyingOrder
from schemas import RevealMethod
from vault import Pbkdf2KeyDerivation, mask_secret

from conftest import BUYER, FILLER, HASH_A, OTHER, make_voucher

PNG = b'\x89PNG\r\n\x1a\nfake-image'


def test_mask_secret():
    assert mask_secret('0123456789abcdef') == '0123...cdef'
    assert mask_secret('short') == '****'


def test_kdf_name_records_iterations():
    assert Pbkdf2KeyDerivation(1234).name == 'pbkdf2-sha256:1234'


def test_seal_and_open_with_matching_secret(vault):
    sealed = vault.seal(make_voucher(amount=300), 'secret-1')
    assert sealed.call_data.startswith('0x')
    payload = vault.open_sealed(sealed.ciphertext, sealed.public_uuid, 'secret-1')
    assert payload.amount == 300


def test_open_with_wrong_secret_fails_uniformly(vault):
    sealed = vault.seal(make_voucher(), 'secret-1')
    with pytest.raises(RelayError) as exc:
        vault.open_sealed(sealed.ciphertext, sealed.public_uuid, 'secret-2', 'buy-1')
    assert exc.value.kind == ErrorKind.DECRYPTION_FAILED
    assert exc.value.message == DECRYPTION_FAILED_MESSAGE
    with pytest.raises(RelayError) as exc:
        vault.open_sealed('zz-not-hex', sealed.public_uuid, 'secret-1', 'buy-1')
    assert exc.value.message == DECRYPTION_FAILED_MESSAGE


def test_seal_for_order_generates_private_uuid(vault):
    sealed = vault.seal_for_order(make_voucher())
    assert sealed.private_uuid
    assert sealed.private_uuid != sealed.public_uuid


# ----------------------------- Reveal ------------------------------

def test_reveal_requires_filled_order(vault, active_buying_order):
    order, secret = active_buying_order()
    with pytest.raises(RelayError) as exc:
        vault.reveal(order.order_id, secret, RevealMethod.LOCAL, BUYER)
    assert exc.value.kind == ErrorKind.UNAUTHORIZED


def test_reveal_only_for_filler_or_owner(vault, filled_buying_order):
    order, secret = filled_buying_order()
    with pytest.raises(RelayError) as exc:
        vault.reveal(order.order_id, secret, RevealMethod.LOCAL, OTHER)
    assert exc.value.kind == ErrorKind.UNAUTHORIZED

    assert vault.reveal(order.order_id, secret, RevealMethod.LOCAL, BUYER).payload.amount == 100
    result = vault.reveal(order.order_id, secret, RevealMethod.LOCAL, FILLER)
    assert result.method == RevealMethod.LOCAL


def test_reveal_marks_order_decrypted(vault, orders, filled_buying_order):
    order, secret = filled_buying_order()
    assert not order.has_been_decrypted
    vault.reveal(order.order_id, secret, RevealMethod.LOCAL, FILLER)
    assert orders.get_buying_order(order.order_id).has_been_decrypted


def test_reveal_wrong_secret(vault, filled_buying_order):
    order, _ = filled_buying_order()
    with pytest.raises(RelayError) as exc:
        vault.reveal(order.order_id, 'wrong', RevealMethod.LOCAL, FILLER)
    assert exc.value.kind == ErrorKind.DECRYPTION_FAILED


def test_reveal_from_transaction_input(vault, chain_reader, filled_buying_order):
    order, secret = filled_buying_order()
    chain_reader.inputs[HASH_A] = '0x' + order.encrypted_payload
    result = vault.reveal(order.order_id, secret, RevealMethod.BLOCKCHAIN, FILLER)
    assert result.method == RevealMethod.BLOCKCHAIN
    assert result.payload.reference_code == order.reference_code


def test_reveal_falls_back_to_receipt_log(vault, chain_reader, filled_buying_order):
    order, secret = filled_buying_order()
    chain_reader.inputs[HASH_A] = '0xa9059cbb' + '00' * 64
    chain_reader.logs[HASH_A] = '0x' + order.encrypted_payload
    result = vault.reveal(order.order_id, secret, RevealMethod.BLOCKCHAIN, FILLER)
    assert result.payload.amount == 100


def test_reveal_chain_unavailable_is_decryption_failure(vault, chain_reader, filled_buying_order):
    order, secret = filled_buying_order()
    chain_reader.error = RelayError(ErrorKind.PROVIDER_UNAVAILABLE, 'rpc down')
    with pytest.raises(RelayError) as exc:
        vault.reveal(order.order_id, secret, RevealMethod.BLOCKCHAIN, FILLER)
    assert exc.value.kind == ErrorKind.DECRYPTION_FAILED


def test_auto_reveal_uses_chain_when_local_copy_missing(vault, chain_reader, filled_buying_order, engine):
    order, secret = filled_buying_order()
    chain_reader.inputs[HASH_A] = '0x' + order.encrypted_payload
    with DBSession(engine) as s:
        stored = s.get(BuyingOrder, order.order_id)
        stored.encrypted_payload = None
        s.add(stored)
        s.commit()
    result = vault.reveal(order.order_id, secret, RevealMethod.AUTO, BUYER)
    assert result.method == RevealMethod.BLOCKCHAIN


# ------------------------------ Image ------------------------------

@pytest.fixture
def released_order(vault, filled_buying_order):
    order, secret = filled_buying_order()
    vault.attach_image(order.order_id, PNG, 'voucher.png', BUYER)
    vault.reveal(order.order_id, secret, RevealMethod.LOCAL, FILLER)
    return order


def test_attach_image_only_owner_and_allowed_types(vault, filled_buying_order):
    order, _ = filled_buying_order()
    with pytest.raises(RelayError) as exc:
        vault.attach_image(order.order_id, PNG, 'voucher.gif', BUYER)
    assert exc.value.kind == ErrorKind.INVALID_REQUEST
    with pytest.raises(RelayError) as exc:
        vault.attach_image(order.order_id, PNG, 'voucher.png', FILLER)
    assert exc.value.kind == ErrorKind.UNAUTHORIZED


def test_attach_image_replaces_previous_file(vault, filled_buying_order):
    order, _ = filled_buying_order()
    first = vault.attach_image(order.order_id, PNG, 'a.png', BUYER)
    second = vault.attach_image(order.order_id, PNG, 'b.jpg', BUYER)
    assert not (vault.upload_dir / f"{first}.png").exists()
    assert (vault.upload_dir / f"{second}.jpg").exists()


def test_release_requires_decryption(vault, filled_buying_order):
    order, _ = filled_buying_order()
    vault.attach_image(order.order_id, PNG, 'voucher.png', BUYER)
    with pytest.raises(RelayError) as exc:
        vault.release_image(order.order_id, FILLER)
    assert exc.value.kind == ErrorKind.UNAUTHORIZED


def test_owner_reveal_does_not_unlock_filler_release(vault, orders, filled_buying_order):
    order, secret = filled_buying_order()
    vault.attach_image(order.order_id, PNG, 'voucher.png', BUYER)
    vault.reveal(order.order_id, secret, RevealMethod.LOCAL, BUYER)
    assert orders.get_buying_order(order.order_id).has_been_decrypted
    with pytest.raises(RelayError) as exc:
        vault.release_image(order.order_id, FILLER)
    assert exc.value.kind == ErrorKind.UNAUTHORIZED

    vault.reveal(order.order_id, secret, RevealMethod.LOCAL, FILLER)
    assert orders.get_buying_order(order.order_id).filler_decrypted_at is not None
    assert vault.release_image(order.order_id, FILLER).token


def test_release_only_for_filler(vault, released_order):
    with pytest.raises(RelayError) as exc:
        vault.release_image(released_order.order_id, BUYER)
    assert exc.value.kind == ErrorKind.UNAUTHORIZED


def test_release_without_image(vault, filled_buying_order):
    order, secret = filled_buying_order()
    vault.reveal(order.order_id, secret, RevealMethod.LOCAL, FILLER)
    with pytest.raises(RelayError) as exc:
        vault.release_image(order.order_id, FILLER)
    assert exc.value.kind == ErrorKind.IMAGE_NOT_AVAILABLE


def test_download_is_single_use_and_deletes_file(vault, orders, released_order):
    release = vault.release_image(released_order.order_id, FILLER)
    image = vault.download_image(release.token, released_order.order_id)
    assert image.content == PNG
    assert image.media_type == 'image/png'
    assert image.filename == f"voucher-{released_order.order_id}.png"
    assert list(vault.upload_dir.iterdir()) == []

    stored = orders.get_buying_order(released_order.order_id)
    assert stored.image_consumed_at is not None
    with pytest.raises(RelayError) as exc:
        vault.download_image(release.token, released_order.order_id)
    assert exc.value.kind == ErrorKind.IMAGE_ALREADY_CONSUMED
    with pytest.raises(RelayError) as exc:
        vault.release_image(released_order.order_id, FILLER)
    assert exc.value.kind == ErrorKind.IMAGE_ALREADY_CONSUMED


def test_new_release_supersedes_previous_token(vault, released_order):
    old = vault.release_image(released_order.order_id, FILLER)
    new = vault.release_image(released_order.order_id, FILLER)
    with pytest.raises(RelayError) as exc:
        vault.download_image(old.token, released_order.order_id)
    assert exc.value.kind == ErrorKind.IMAGE_NOT_AVAILABLE
    assert vault.download_image(new.token).content == PNG


def test_expired_release_token(vault, released_order):
    release = vault.release_image(released_order.order_id, FILLER)
    settings = get_settings()
    claims = jwt.decode(release.token, settings.jwt_secret, algorithms=[settings.jwt_algorithm],
                        audience='voucher-image')
    claims['exp'] = claims['iat'] - 1
    expired = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    with pytest.raises(RelayError) as exc:
        vault.download_image(expired, released_order.order_id)
    assert exc.value.kind == ErrorKind.RELEASE_EXPIRED


def test_token_for_other_order_is_refused(vault, released_order):
    release = vault.release_image(released_order.order_id, FILLER)
    with pytest.raises(RelayError) as exc:
        vault.download_image(release.token, 'buy-other')
    assert exc.value.kind == ErrorKind.IMAGE_NOT_AVAILABLE


def test_request_download_builds_link(vault, released_order):
    url, release = vault.request_download(released_order.order_id, FILLER)
    assert url.endswith(f"/buying-orders/{released_order.order_id}/download-image?token={release.token}")
