import copy, datetime, re, types
from collections import OrderedDict, defaultdict
from typing import Any, Dict, Optional

# Immutable values are shared between original and copy
_ATOMIC = (
    type(None), bool, int, float, complex, str, bytes, range, type(Ellipsis), type(NotImplemented),
    type, types.FunctionType, types.BuiltinFunctionType, types.MethodType, types.ModuleType,
    datetime.date, datetime.time, datetime.timedelta, datetime.tzinfo, re.Pattern,
)

# Classes overriding any of these own their copy protocol
_PICKLE_HOOKS = ('__reduce_ex__', '__reduce__', '__getstate__', '__setstate__', '__copy__')

def _has_default_state(cls) -> bool:
    return all(getattr(cls, name, None) is getattr(object, name, None) for name in _PICKLE_HOOKS)

def deep_copy(obj: Any, memo: Optional[Dict[int, Any]] = None) -> Any:
    """Structural deep copy of an arbitrary value graph.

    Cycles and shared references are preserved through an identity memo keyed
    by id(). Dicts (including OrderedDict and defaultdict), lists, tuples,
    namedtuples, sets, frozensets and plain attribute objects are rebuilt here;
    anything else, or anything with its own __deepcopy__ or pickle hooks
    (__getstate__, __reduce_ex__, ...), is handed to copy.deepcopy with the
    same memo so the two stay consistent.

    Not used by the engine itself: flows share the `shared` dict by reference.
    Use this to snapshot or isolate fragments of it.

    Example:
        a = {"items": [1, 2]}; a["self"] = a
        b = deep_copy(a)
        assert b["self"] is b and b["items"] is not a["items"]
    """
    if isinstance(obj, _ATOMIC): return obj
    if memo is None: memo = {}
    oid = id(obj)
    if oid in memo: return memo[oid]
    cls = type(obj)

    if isinstance(obj, dict) and cls in (dict, OrderedDict, defaultdict):
        result = cls(obj.default_factory) if cls is defaultdict else cls()
        memo[oid] = result
        for k, v in obj.items(): result[deep_copy(k, memo)] = deep_copy(v, memo)
        return result
    if cls is list:
        result = []
        memo[oid] = result
        result.extend(deep_copy(v, memo) for v in obj)
        return result
    if cls is set:
        result = set()
        memo[oid] = result
        for v in obj: result.add(deep_copy(v, memo))
        return result
    if cls is bytearray:
        result = memo[oid] = bytearray(obj)
        return result
    if isinstance(obj, (tuple, frozenset)) and (cls in (tuple, frozenset) or hasattr(cls, '_fields')):
        items = [deep_copy(v, memo) for v in obj]
        # A cycle through a mutable member may already have produced the copy
        if oid in memo: return memo[oid]
        if all(a is b for a, b in zip(items, obj)): result = obj
        elif hasattr(cls, '_fields'): result = cls(*items)
        else: result = cls(items)
        memo[oid] = result
        return result

    if hasattr(obj, '__deepcopy__'): return copy.deepcopy(obj, memo)
    if (isinstance(getattr(obj, '__dict__', None), dict) and cls.__new__ is object.__new__
            and not hasattr(cls, '__slots__') and _has_default_state(cls)):
        result = object.__new__(cls)
        memo[oid] = result
        for k, v in obj.__dict__.items(): result.__dict__[k] = deep_copy(v, memo)
        return result
    return copy.deepcopy(obj, memo)
