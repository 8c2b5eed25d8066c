import pytest

from bitmite.magnet import Magnet, MagnetError


def test_parse_valid_full_magnet_link():
    uri = (
        "magnet:?xt=urn:btih:e8f320feb8215d29994b29b472e043b2f8469e77"
        "&dn=ubuntu-24.04-desktop-amd64.iso"
        "&tr=https%3A%2F%2Ftorrent.ubuntu.com%2Fannounce"
    )
    magnet = Magnet.from_uri(uri)
    assert magnet.info_hash.hex() == "e8f320feb8215d29994b29b472e043b2f8469e77"
    assert magnet.display_name == "ubuntu-24.04-desktop-amd64.iso"
    assert len(magnet.trackers) == 1
    assert magnet.trackers[0] == "https://torrent.ubuntu.com/announce"


def test_parse_magnet_with_multiple_trackers():
    uri = (
        "magnet:?xt=urn:btih:e8f320feb8215d29994b29b472e043b2f8469e77&dn=test"
        "&tr=udp%3A%2F%2Ftracker1.com%3A6969&tr=http%3A%2F%2Ftracker2.org%2Fannounce"
    )
    magnet = Magnet.from_uri(uri)
    assert len(magnet.trackers) == 2
    assert "udp://tracker1.com:6969" in magnet.trackers
    assert "http://tracker2.org/announce" in magnet.trackers


def test_parse_magnet_no_display_name():
    uri = (
        "magnet:?xt=urn:btih:e8f320feb8215d29994b29b472e043b2f8469e77"
        "&tr=udp%3A%2F%2Ftracker.openbittorrent.com%3A80"
    )
    magnet = Magnet.from_uri(uri)
    assert magnet.display_name is None


def test_parse_magnet_no_trackers():
    uri = "magnet:?xt=urn:btih:e8f320feb8215d29994b29b472e043b2f8469e77&dn=some-file.zip"
    magnet = Magnet.from_uri(uri)
    assert len(magnet.trackers) == 0


def test_parse_magnet_with_url_encoded_display_name():
    uri = "magnet:?xt=urn:btih:13a40134f0c768c2d589e003ce73e23c0c978051&dn=A+Great+Movie+%282024%29"
    magnet = Magnet.from_uri(uri)
    assert magnet.display_name == "A Great Movie (2024)"


def test_uppercase_hex_info_hash():
    uri = "magnet:?xt=urn:btih:A46191E0C823E42FF8EAED2E6ACB9127383CC190"
    magnet = Magnet.from_uri(uri)
    assert magnet.info_hash.hex() == "a46191e0c823e42ff8eaed2e6acb9127383cc190"


def test_invalid_uri_scheme():
    uri = "http:?xt=urn:btih:e8f320feb8215d29994b29b472e043b2f8469e77"
    with pytest.raises(MagnetError) as excinfo:
        Magnet.from_uri(uri)
    assert str(excinfo.value) == "Invalid magnet URI: Must start with 'magnet:?'"


def test_missing_info_hash():
    uri = "magnet:?dn=ubuntu-24.04-desktop-amd64.iso"
    with pytest.raises(MagnetError) as excinfo:
        Magnet.from_uri(uri)
    assert str(excinfo.value) == "Magnet URI is missing the 'xt' (info hash) parameter"


def test_invalid_info_hash_urn():
    uri = "magnet:?xt=urn:btih-invalid:e8f320feb8215d29994b29b472e043b2f8469e77"
    with pytest.raises(MagnetError) as excinfo:
        Magnet.from_uri(uri)
    assert str(excinfo.value) == "Invalid 'xt' parameter format: Must start with 'urn:btih:'"


def test_invalid_info_hash_hex():
    uri = "magnet:?xt=urn:btih:thisisnothex"
    with pytest.raises(MagnetError) as excinfo:
        Magnet.from_uri(uri)
    assert str(excinfo.value) == "Invalid hex-encoded info hash"


def test_info_hash_wrong_length():
    uri = "magnet:?xt=urn:btih:deadbeef"
    with pytest.raises(MagnetError) as excinfo:
        Magnet.from_uri(uri)
    assert str(excinfo.value) == "Info hash must be 20 bytes long"