import orjson


def canonical_bytes(d: dict) -> bytes:
    # sorted keys, no whitespace; datetimes and enums serialise natively
    return orjson.dumps(d, option=orjson.OPT_SORT_KEYS)


def dumps_text(d: dict) -> str:
    return canonical_bytes(d).decode("utf-8")


def loads(raw) -> object:
    return orjson.loads(raw)
