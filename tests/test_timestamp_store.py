from unittest.mock import MagicMock

from db_copy.timestamp_store import Side, TimestampStore

T1 = bytes.fromhex("00000000000000FF")
T2 = bytes.fromhex("0000000000000100")


def test_get_is_case_insensitive():
    store = TimestampStore()
    store.set("CustTable", T1, T2)
    assert store.get("custtable", Side.SOURCE) == T1
    assert store.get("CUSTTABLE", Side.TARGET) == T2
    assert store.get("other", Side.SOURCE) is None


def test_clear_and_clear_all():
    store = TimestampStore()
    store.set("a", T1, T2)
    store.set("b", T1, T2)
    store.clear("A")
    assert store.get("a", Side.SOURCE) is None
    assert store.get("b", Side.TARGET) == T2
    store.clear_all()
    assert store.tables(Side.SOURCE) == ()


def test_malformed_lines_are_skipped():
    blob = "\n".join([
        "CUSTTABLE,0x00000000000000FF",
        "garbage",
        "SALESLINE,0x1234",
        "A,B,C",
        ",0x00000000000000FF",
        "inventtrans , 0X0000000000000100 ",
    ])
    store = TimestampStore()
    assert store.load_from_text(blob, Side.SOURCE) == 2
    assert store.get("custtable", Side.SOURCE) == T1
    assert store.get("InventTrans", Side.SOURCE) == T2


def test_round_trip_ignores_line_order():
    blob = "ZETA,0x0000000000000100\r\nALPHA,0x00000000000000FF"
    store = TimestampStore()
    store.load_from_text(blob, Side.TARGET)
    text = store.to_text(Side.TARGET)
    assert text == "ALPHA,0x00000000000000FF\nZETA,0x0000000000000100"
    assert TimestampStore.parse_text(text) == TimestampStore.parse_text(blob)


def test_sides_are_independent():
    store = TimestampStore()
    store.load("A,0x00000000000000FF", "B,0x0000000000000100")
    assert store.get("a", Side.TARGET) is None
    assert store.get("b", Side.SOURCE) is None


def test_flush_hands_both_blobs_to_callback():
    callback = MagicMock()
    store = TimestampStore(on_flush=callback)
    store.set("a", T1, T2)
    store.flush()
    callback.assert_called_once_with("A,0x00000000000000FF", "A,0x0000000000000100")


def test_flush_without_callback_is_noop():
    TimestampStore().flush()
