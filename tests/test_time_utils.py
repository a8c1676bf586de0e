from liverec.time_utils import format_hms, split_hms, two_digits


def test_split_hms():
    assert split_hms(0) == (0, 0, 0)
    assert split_hms(3725.9) == (1, 2, 5)
    assert split_hms(-4) == (0, 0, 0)


def test_format_hms_pads_and_allows_custom_separator():
    assert format_hms(150) == "00:02:30"
    assert format_hms(36000 * 10 + 5) == "100:00:05"
    assert format_hms(65, separator="-") == "00-01-05"


def test_two_digits():
    assert two_digits(7) == "07"
    assert two_digits(123) == "123"
