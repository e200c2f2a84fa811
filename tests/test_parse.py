"""
SAFT parser tests
Run with: pytest tests/test_parse.py
"""
import io
import json
import os
import sys

import pytest

# Add parent directory to path to import saft.py
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
import saft

Q = "`"


def render(elem, top=True):
    """Compact tree rendering used to compare parse results."""
    if elem.is_string() is not None:
        out = json.dumps(elem.value) + " "
    elif elem.is_list() is not None:
        out = "[" + "".join(render(e, False) for e in elem.items) + "]"
    else:
        out = "{" + "".join(
            json.dumps(p.key.value) + ":" + render(p.value, False) + " " for p in elem.pairs
        ) + "}"
    return out + " " if top else out


def parse(text):
    return "".join(render(e) for e in saft.loads(text)).strip()


def parse_error(text):
    with pytest.raises(saft.SaftError) as excinfo:
        saft.loads(text)
    return str(excinfo.value)

# ==========================================
# 1. Root Elements
# ==========================================

def test_empty_document():
    assert saft.loads("") == []
    assert saft.loads("  // only a comment\n\t") == []

def test_root_string():
    assert parse('a "a b" ' + Q + "a\nb" + Q) == r'"a"  "a b"  "a\nb"'

def test_raw_string_keeps_newline():
    elems = saft.loads(Q + "a\nb" + Q)
    assert len(elems) == 1
    assert elems[0].expect_string().value == "a\nb"

def test_root_list():
    src = ("\n[] [[]] [[][]]\n[a a] [a \"a a\" " + Q + "a\na" + Q + "]\n"
           "[a[a[a]]] [a [a [a]]]\n[a {a:a a:[a{a:a}]}]")
    assert parse(src) == (
        '[] [[]] [[][]] ["a" "a" ] ["a" "a a" "a\\na" ] ["a" ["a" ["a" ]]] '
        '["a" ["a" ["a" ]]] ["a" {"a":"a"  "a":["a" {"a":"a"  }] }]'
    )

def test_root_assoc_list():
    src = "\n{}\n{a:b a:c}\n{a: {x:y} b: [i j k]}\n"
    assert parse(src) == '{} {"a":"b"  "a":"c"  } {"a":{"x":"y"  } "b":["i" "j" "k" ] }'

def test_interpreted_key():
    assert parse('{"a b":c "\\t":d}') == '{"a b":"c"  "\\t":"d"  }'

def test_positions():
    elems = saft.loads("x\n  [a {k:\n\tv}]")
    assert str(elems[0].pos) == "1:0"
    lst = elems[1].expect_list()
    assert str(lst.pos) == "2:2"
    assoc = lst.items[1].expect_assoc()
    assert str(assoc.pos) == "2:5"
    pair = assoc.pairs[0]
    assert str(pair.key.pos) == "2:6"
    assert str(pair.value.pos) == "3:8"

def test_parse_from_stream():
    elems = saft.parse(io.StringIO("[a b]"))
    assert [e.value for e in elems[0].items] == ["a", "b"]

# ==========================================
# 2. Grammar Errors
# ==========================================

@pytest.mark.parametrize("src, error", [
    (":", "1:0: expected string, list or association list"),
    ("]", "1:0: expected string, list or association list"),
    ("[:", "1:1: expected string, list or association list"),
    ("{a::}", "1:3: expected string, list or association list"),
    ("[", "1:1: unterminated list"),
    ("[a [b]", "1:6: unterminated list"),
    ("{", "1:1: unterminated association list"),
    ("{a:", "1:3: unterminated association list pair"),
    ("{a: }", "1:4: unterminated association list pair"),
    ("{a :", "1:1: key in association list pair must be immediately followed by colon"),
    ("{a}", "1:1: key in association list pair must be immediately followed by colon"),
    ("{" + Q + "a" + Q + ":", "1:1: key in association list pair must be of symbol or interpreted string form"),
    ("{[]:a}", "1:1: key in association list pair must be of symbol or interpreted string form"),
    ("{a:[]b:c}", "1:5: association list pairs must be separated by whitespace"),
    ("{a:{}b:c}", "1:5: association list pairs must be separated by whitespace"),
])
def test_grammar_errors(src, error):
    assert parse_error(src) == error

def test_parse_errors_are_parse_error():
    with pytest.raises(saft.ParseError):
        saft.loads("[")

def test_lex_errors_surface_through_parse():
    with pytest.raises(saft.LexError) as excinfo:
        saft.loads('{a:"x}')
    assert str(excinfo.value) == "1:6: unterminated string"

def test_joined_string_in_assoc():
    assert parse_error('{a"a":b}') == "1:2: strings must be separated"

def test_first_error_wins():
    """Only the first of several errors is reported"""
    assert parse_error("[a : b] }") == "1:3: expected string, list or association list"

def test_no_partial_result():
    with pytest.raises(saft.ParseError):
        saft.loads("a b [c")

@pytest.mark.parametrize("src", [
    "", "{", "}", "[", "]", ":", "//", "/", "\\", '"', "`", "{a", "{a:b", "{a:b c",
    "[{a:[{b:", "a\"", "\t\t// x\n\n", "{:}", "{\"\":\"\"}", "a:b",
])
def test_never_crashes(src):
    try:
        elems = saft.loads(src)
    except saft.SaftError as exc:
        assert exc.pos.line >= 1
    else:
        assert all(isinstance(e, saft.Elem) for e in elems)

def test_moderate_nesting():
    elems = saft.loads("[" * 50 + "x" + "]" * 50)
    depth, elem = 0, elems[0]
    while elem.is_list() is not None:
        elem = elem.items[0]
        depth += 1
    assert depth == 50
    assert elem.value == "x"

def test_nesting_too_deep():
    """Runaway nesting is reported as a positioned error"""
    with pytest.raises(saft.ParseError) as excinfo:
        saft.loads("[" * 5000 + "]" * 5000)
    assert excinfo.value.message == "nesting too deep"
    assert excinfo.value.pos.line == 1

def test_ascii_separator_inside_symbol():
    assert [e.value for e in saft.loads("a\x1fb c")] == ["a\x1fb", "c"]
