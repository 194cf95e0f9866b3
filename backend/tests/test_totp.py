import pytest

from totp_utils import (
    base32_decode,
    base32_encode,
    build_totp_uri,
    current_counter,
    format_secret,
    generate_secret,
    totp_code,
    verify_totp,
)

RFC_KEY = b"12345678901234567890"
RFC_KEY_B32 = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


def test_base32_matches_rfc4648():
    assert base32_encode(RFC_KEY) == RFC_KEY_B32
    assert base32_encode(b"f") == "MY"
    assert base32_encode(b"foobar") == "MZXW6YTBOI"


def test_base32_decode_tolerates_spacing_case_and_padding():
    assert base32_decode(RFC_KEY_B32) == RFC_KEY
    assert base32_decode("gezd gnbv gy3t qojq gezd gnbv gy3t qojq") == RFC_KEY
    assert base32_decode("MZXW6YTBOI======") == b"foobar"


@pytest.mark.parametrize("counter,expected", [
    (0, "755224"),
    (1, "287082"),
    (2, "359152"),
    (3, "969429"),
    (4, "338314"),
    (5, "254676"),
    (6, "287922"),
    (7, "162583"),
    (8, "399871"),
    (9, "520489"),
])
def test_hotp_rfc4226_vectors(counter, expected):
    assert totp_code(RFC_KEY, counter) == expected


@pytest.mark.parametrize("ts,expected", [
    (59, "287082"),
    (1111111109, "081804"),
    (1111111111, "050471"),
    (1234567890, "005924"),
    (2000000000, "279037"),
])
def test_totp_rfc6238_sha1_vectors(ts, expected):
    assert totp_code(RFC_KEY, current_counter(ts)) == expected
    assert verify_totp(RFC_KEY_B32, expected, now=ts)


def test_verify_accepts_one_window_of_skew():
    boundary = 1_700_000_010.0 - (1_700_000_010 % 30)
    code = totp_code(RFC_KEY, current_counter(boundary))
    assert verify_totp(RFC_KEY_B32, code, now=boundary + 29)
    assert verify_totp(RFC_KEY_B32, code, now=boundary + 59)
    assert verify_totp(RFC_KEY_B32, code, now=boundary - 29)
    assert not verify_totp(RFC_KEY_B32, code, now=boundary + 60)
    assert not verify_totp(RFC_KEY_B32, code, now=boundary - 31)


def test_verify_rejects_non_matching_code():
    now = 1_700_000_000.0
    c = current_counter(now)
    window = {totp_code(RFC_KEY, c + d) for d in (-1, 0, 1)}
    wrong = next(f"{n:06d}" for n in range(1_000_000) if f"{n:06d}" not in window)
    assert not verify_totp(RFC_KEY_B32, wrong, now=now)


@pytest.mark.parametrize("bad", ["", "12345", "1234567", "abcdef", " 50471", "050471\n", "０５０４７１", 50471, None])
def test_verify_rejects_anything_but_six_ascii_digits(bad):
    assert not verify_totp(RFC_KEY_B32, bad, now=1111111111)


def test_generate_secret_is_20_random_bytes():
    s = generate_secret()
    assert len(s) == 32
    assert "=" not in s
    assert len(base32_decode(s)) == 20
    assert generate_secret() != s


def test_enrollment_uri_and_display_format():
    uri = build_totp_uri("ABCDEFGH", issuer="SolReclaimer")
    assert uri == "otpauth://totp/SolReclaimer:admin?secret=ABCDEFGH&issuer=SolReclaimer&digits=6&period=30"
    assert format_secret("ABCDEFGHIJ") == "ABCD EFGH IJ"
