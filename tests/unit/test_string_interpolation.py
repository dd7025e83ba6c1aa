import pytest
from stackship.UTILS.string_interpolation import EnvironmentInterpolator


@pytest.mark.parametrize("template,context,expected", [
    ("${A}", {"A": "1"}, "1"),
    ("${A:-x}", {}, "x"),
    ("${A:-x}", {"A": ""}, "x"),
    ("${A:-x}", {"A": "1"}, "1"),
    ("${A:+set}", {"A": "1"}, "set"),
    ("${A:+set}", {}, ""),
    ("$$HOME", {}, "$HOME"),
    ("cost: $$${PRICE}", {"PRICE": "5"}, "cost: $5"),
    ("$PLAIN", {}, "$PLAIN"),
])
def test_interpolate(template, context, expected):
    assert EnvironmentInterpolator.interpolate(template, context) == expected


def test_missing_variable():
    with pytest.raises(KeyError, match="A"):
        EnvironmentInterpolator.interpolate("${A}", {})


def test_required_variable_message():
    with pytest.raises(KeyError, match="set the token"):
        EnvironmentInterpolator.interpolate("${TOKEN:?set the token}", {})
