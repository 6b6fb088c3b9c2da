from utils import extract_client_info, is_ip_whitelisted

from conftest import make_request


def test_first_forwarded_for_entry_wins():
    request = make_request(ip=" 198.51.100.7 , 10.0.0.1")

    assert extract_client_info(request).ip_address == "198.51.100.7"


def test_real_ip_used_without_forwarded_for():
    request = make_request(ip=None, headers={"X-Real-IP": "192.0.2.44"})

    assert extract_client_info(request).ip_address == "192.0.2.44"


def test_missing_headers_fall_back_to_unknown():
    request = make_request(ip=None, user_agent="")
    info = extract_client_info(request)

    assert info.ip_address == "unknown"
    assert info.user_agent == "unknown"
    assert info.origin == "unknown"
    assert info.referer == "unknown"


def test_origin_and_referer_are_captured():
    request = make_request(headers={"Origin": "https://a.example", "Referer": "https://a.example/x"})
    info = extract_client_info(request)

    assert info.origin == "https://a.example"
    assert info.referer == "https://a.example/x"


def test_empty_whitelist_allows_everything():
    assert is_ip_whitelisted("203.0.113.9", [])
    assert is_ip_whitelisted("unknown", None)


def test_exact_and_cidr_matches():
    whitelist = ["192.0.2.10", "10.0.0.0/8", "2001:db8::/32"]

    assert is_ip_whitelisted("192.0.2.10", whitelist)
    assert is_ip_whitelisted("10.200.3.4", whitelist)
    assert is_ip_whitelisted("2001:db8::1", whitelist)
    assert not is_ip_whitelisted("192.0.2.11", whitelist)
    assert not is_ip_whitelisted("11.0.0.1", whitelist)


def test_invalid_address_never_matches_a_range():
    assert not is_ip_whitelisted("unknown", ["0.0.0.0/0"])
    assert not is_ip_whitelisted("10.0.0.1", ["not-a-network/8"])
