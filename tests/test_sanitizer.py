import datetime
import enum
import json

from scry.scry_sanitizer import (
    CIRCULAR_MARKER, DEPTH_MARKER, MAX_SAFE_INTEGER, Sanitizer, sanitize,
)


class Color(enum.Enum):
    RED = 1


class Plain:
    pass


class Described:
    def __repr__(self):
        return "described"


class Broken:
    def __str__(self):
        raise RuntimeError("no text")


def named():
    pass


def test_primitives_pass_through():
    assert sanitize(None) is None
    assert sanitize(True) is True
    assert sanitize("text") == "text"
    assert sanitize(1.5) == 1.5
    assert sanitize(MAX_SAFE_INTEGER) == MAX_SAFE_INTEGER


def test_big_integers_become_suffixed_strings():
    assert sanitize(2 ** 60) == f"{2 ** 60}n"
    assert sanitize(-(2 ** 60)) == f"{-(2 ** 60)}n"


def test_self_reference_is_marked():
    d = {}
    d['self'] = d
    assert sanitize(d) == {'self': CIRCULAR_MARKER}

    xs = [1]
    xs.append(xs)
    assert sanitize(xs) == [1, CIRCULAR_MARKER]


def test_shared_references_are_not_circular():
    shared = [1]
    assert sanitize([shared, shared]) == [[1], [1]]


def test_long_arrays_are_truncated():
    out = sanitize(list(range(150)))
    assert len(out) == 101
    assert out[:3] == [0, 1, 2]
    assert out[-1] == "... 50 more items"


def test_wide_objects_are_truncated():
    out = sanitize({f"k{i}": i for i in range(60)})
    assert len(out) == 51
    assert out["k0"] == 0
    assert out["..."] == "10 more keys"


def test_deep_nesting_is_cut():
    value = 0
    for _ in range(15):
        value = [value]
    out = sanitize(value)
    for _ in range(11):
        out = out[0]
    assert out == DEPTH_MARKER


def test_callables_become_labels():
    assert sanitize(named) == "[Function: named]"
    assert sanitize(lambda: 1) == "[Function: anonymous]"
    assert sanitize(len) == "[Function: len]"
    assert sanitize(Plain) == "[Function: Plain]"
    assert sanitize({'f': named}) == {'f': "[Function: named]"}


def test_symbols():
    assert sanitize(Color.RED) == "[Symbol: Color.RED]"
    assert sanitize(...) == "[Symbol: Ellipsis]"


def test_errors_become_records():
    assert sanitize(ValueError("bad")) == {
        'name': 'ValueError',
        'message': 'bad',
        'stack': 'ValueError: bad...',
    }


def test_instances_become_labels():
    assert sanitize(Plain()) == "[Plain]"
    assert sanitize(Described()) == "[Described: described]"
    assert sanitize(Broken()) == "[Instance of Broken]"


def test_long_label_text_is_shortened():
    class Wordy:
        def __str__(self):
            return "w" * 80
    assert sanitize(Wordy()) == "[Wordy: " + "w" * 50 + "...]"


def test_other_containers():
    assert sanitize((1, "a")) == [1, "a"]
    assert sanitize({3}) == [3]
    assert sanitize({1: 'a', None: 'b'}) == {'1': 'a', 'None': 'b'}
    assert sanitize(datetime.date(2020, 1, 2)) == "2020-01-02"


def test_custom_limits():
    small = Sanitizer(max_depth=1, max_array_length=2, max_object_keys=1)
    assert small.sanitize([1, 2, 3]) == [1, 2, "... 1 more items"]
    assert small.sanitize({'a': 1, 'b': 2}) == {'a': 1, '...': "1 more keys"}
    assert small.sanitize([[[1]]]) == [[DEPTH_MARKER]]


def test_output_is_json_safe():
    d = {'fn': named, 'obj': Plain(), 'err': KeyError('k'), 'big': 2 ** 64}
    d['again'] = d
    json.dumps(sanitize(d))


def test_sets_are_sorted_when_comparable():
    assert sanitize({'pear', 'apple', 'fig'}) == ['apple', 'fig', 'pear']
    assert sanitize(frozenset({3, 1, 2})) == [1, 2, 3]
    assert sorted(sanitize({1, 'a'}), key=str) == [1, 'a']


def test_colliding_keys_keep_every_value():
    assert sanitize({1: 'a', '1': 'b'}) == {'1 (int)': 'a', '1': 'b'}
    assert sanitize({'1': 'b', 1: 'a', '1 (int)': 'c'}) == {'1': 'b', '1 (int) #2': 'a', '1 (int)': 'c'}
