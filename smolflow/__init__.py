import asyncio, copy, inspect, time
from collections.abc import Mapping, Sequence
from typing import Any, Optional, Protocol, runtime_checkable

from .errors import InvalidArgument
from .warning_channel import (FlowWarning, WarningChannel, add_warning_handler, clear_warning_handlers,
                              default_channel, get_default_channel, stderr_handler)
from .copying import deep_copy

__version__ = "1.0.0"

__all__ = [
    "BaseNode", "Node", "BatchNode", "Flow", "BatchFlow",
    "AsyncNode", "AsyncBatchNode", "AsyncParallelBatchNode", "AsyncFlow", "AsyncBatchFlow", "AsyncParallelBatchFlow",
    "ConditionalTransition", "Runnable", "AsyncRunnable",
    "InvalidArgument", "FlowWarning", "WarningChannel", "default_channel", "get_default_channel",
    "add_warning_handler", "clear_warning_handlers", "stderr_handler", "deep_copy",
]

@runtime_checkable
class Runnable(Protocol):
    """Synchronous lifecycle: everything a Flow needs to drive a node."""
    def _run(self, shared: Any) -> Any: ...
    def run(self, shared: Any) -> Any: ...

@runtime_checkable
class AsyncRunnable(Protocol):
    """Suspend/resume lifecycle: what an AsyncFlow awaits instead of calling _run."""
    async def _run_async(self, shared: Any) -> Any: ...
    async def run_async(self, shared: Any) -> Any: ...

def _is_sequence(value): return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))

def _check_action(action):
    if not isinstance(action, str): raise InvalidArgument("Action must be a string")

def _check_node(node, what="Node"):
    if not isinstance(node, BaseNode): raise InvalidArgument(f"{what} must be a BaseNode instance, got {type(node).__name__}")

def _check_concurrency_limit(limit):
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
        raise InvalidArgument("concurrency_limit must be at least 1")

def _is_number(value): return isinstance(value, (int, float)) and not isinstance(value, bool)

class BaseNode:
    def __init__(self, channel: Optional[WarningChannel] = None): self.params, self.successors, self.channel = {}, {}, channel
    def _warn(self, message): (self.channel or default_channel).warn(message)
    def set_params(self, params):
        if not isinstance(params, Mapping): raise InvalidArgument(f"Parameters must be a mapping, got {type(params).__name__}")
        self.params = params
    def next(self, node, action="default"):
        _check_node(node); _check_action(action)
        if action in self.successors: self._warn(f"Overwriting successor for action '{action}'")
        self.successors[action] = node; return node
    def connect(self, node): return self.next(node)
    def with_transition(self, action): _check_action(action); return ConditionalTransition(self, action)
    def prep(self, shared): pass
    def exec(self, prep_res): pass
    def post(self, shared, prep_res, exec_res): return exec_res
    def _exec(self, prep_res): return self.exec(prep_res)
    def _ensure_sync(self, value, phase):
        if inspect.isawaitable(value):
            if inspect.iscoroutine(value): value.close()
            raise RuntimeError(f"{type(self).__name__}.{phase}() returned an awaitable. Use AsyncNode and run_async.")
        return value
    def _run(self, shared):
        p = self._ensure_sync(self.prep(shared), "prep")
        e = self._ensure_sync(self._exec(p), "exec")
        return self._ensure_sync(self.post(shared, p, e), "post")
    def run(self, shared):
        if self.successors: self._warn("Node won't run successors. Use Flow.")
        return self._run(shared)
    def _clone_for_run(self, params):
        # Per-run view: the canonical node keeps its own params and successors
        clone = copy.copy(self)
        clone.successors = dict(self.successors)
        clone.set_params(params)
        return clone
    def __rshift__(self, other): return self.next(other)
    def __sub__(self, action): return self.with_transition(action)

class ConditionalTransition:
    def __init__(self, src, action): self.src, self.action = src, action
    def connect(self, tgt): return self.src.next(tgt, self.action)
    def __rshift__(self, tgt): return self.connect(tgt)

class Node(BaseNode):
    def __init__(self, max_retries=1, wait=0, exponential_backoff=False, max_wait=None, channel=None):
        super().__init__(channel=channel)
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 1: raise InvalidArgument("max_retries must be an integer >= 1")
        if not _is_number(wait) or wait < 0: raise InvalidArgument("wait must be a number >= 0")
        if max_wait is not None and (not _is_number(max_wait) or max_wait < 0): raise InvalidArgument("max_wait must be None or a number >= 0")
        self.max_retries, self.wait, self.exponential_backoff, self.max_wait, self.cur_retry = max_retries, wait, exponential_backoff, max_wait, 0
    def exec_fallback(self, prep_res, exc): raise exc
    def _get_wait_time(self, retry_count):
        if self.wait <= 0: return 0
        w = self.wait * (2 ** retry_count) if self.exponential_backoff else self.wait
        return min(w, self.max_wait) if self.max_wait is not None else w
    def _exec(self, prep_res):
        self.cur_retry = 0
        for i in range(self.max_retries):
            self.cur_retry = i
            try: res = self.exec(prep_res)
            except Exception as e:
                if i == self.max_retries - 1: return self.exec_fallback(prep_res, e)
                w = self._get_wait_time(i)
                if w > 0: time.sleep(w)
            else: return self._ensure_sync(res, "exec")

class BatchNode(Node):
    def _batch_items(self, items):
        if items is None: return []
        if _is_sequence(items): return list(items)
        self._warn(f"{type(self).__name__} expected a sequence but received {type(items).__name__}")
        return [items]
    def _exec(self, items): return [super(BatchNode, self)._exec(i) for i in self._batch_items(items)]

class Flow(BaseNode):
    def __init__(self, start=None, channel=None):
        super().__init__(channel=channel)
        if start is not None: _check_node(start, "Start node")
        self.start_node = start
    def start(self, start): _check_node(start, "Start node"); self.start_node = start; return start
    def get_next_node(self, curr, action):
        label = action or "default"
        try: nxt = curr.successors.get(label)
        except TypeError: nxt = None  # unhashable action
        if nxt is None and curr.successors: self._warn(f"Flow ends: '{label}' not found in {list(curr.successors)}")
        return nxt
    def _start_params(self, params): return params if params is not None else dict(self.params)
    def _orch(self, shared, params=None):
        if self.start_node is None: self._warn("Flow has no start node"); return None
        curr, p, last_action = self.start_node, self._start_params(params), None
        while curr is not None:
            last_action = curr._clone_for_run(p)._run(shared)
            curr = self.get_next_node(curr, last_action)
        return last_action
    def _run(self, shared): p = self.prep(shared); o = self._orch(shared); return self.post(shared, p, o)
    def post(self, shared, prep_res, exec_res): return exec_res

class BatchFlow(Flow):
    def _batch_params(self, pr):
        if pr is None: return []
        if _is_sequence(pr): return pr
        self._warn(f"{type(self).__name__} expected a sequence from prep() but received {type(pr).__name__}")
        return None
    def _run(self, shared):
        pr = self.prep(shared)
        batch = self._batch_params(pr)
        if batch is None: return self.post(shared, pr, None)
        for bp in batch: self._orch(shared, {**self.params, **bp})
        return self.post(shared, pr if pr is not None else [], None)

class AsyncNode(Node):
    async def prep_async(self, shared): pass
    async def exec_async(self, prep_res): pass
    async def exec_fallback_async(self, prep_res, exc): raise exc
    async def post_async(self, shared, prep_res, exec_res): return exec_res
    async def _exec(self, prep_res):
        self.cur_retry = 0
        for i in range(self.max_retries):
            self.cur_retry = i
            try: return await self.exec_async(prep_res)
            except Exception as e:
                if i == self.max_retries - 1: return await self.exec_fallback_async(prep_res, e)
                w = self._get_wait_time(i)
                if w > 0: await asyncio.sleep(w)
    async def run_async(self, shared):
        if self.successors: self._warn("Node won't run successors. Use AsyncFlow.")
        return await self._run_async(shared)
    async def _run_async(self, shared):
        p = await self.prep_async(shared)
        e = await self._exec(p)
        return await self.post_async(shared, p, e)
    def _run(self, shared): raise RuntimeError(f"{type(self).__name__} is asynchronous. Use run_async.")

class AsyncBatchNode(AsyncNode, BatchNode):
    async def _exec(self, items): return [await super(AsyncBatchNode, self)._exec(i) for i in self._batch_items(items)]

class AsyncParallelBatchNode(AsyncNode, BatchNode):
    def __init__(self, max_retries=1, wait=0, exponential_backoff=False, max_wait=None, concurrency_limit=None, channel=None):
        super().__init__(max_retries, wait, exponential_backoff, max_wait, channel=channel)
        _check_concurrency_limit(concurrency_limit); self.concurrency_limit = concurrency_limit
    async def _exec(self, items):
        run_one = super(AsyncParallelBatchNode, self)._exec
        if self.concurrency_limit is None: return await asyncio.gather(*(run_one(i) for i in self._batch_items(items)))
        sem = asyncio.Semaphore(self.concurrency_limit)
        async def bounded(i):
            async with sem: return await run_one(i)
        return await asyncio.gather(*(bounded(i) for i in self._batch_items(items)))

class AsyncFlow(Flow, AsyncNode):
    async def prep_async(self, shared): pass
    async def post_async(self, shared, prep_res, exec_res): return exec_res
    async def _orch_async(self, shared, params=None):
        if self.start_node is None: self._warn("AsyncFlow has no start node"); return None
        curr, p, last_action = self.start_node, self._start_params(params), None
        while curr is not None:
            clone = curr._clone_for_run(p)
            last_action = await clone._run_async(shared) if isinstance(clone, AsyncRunnable) else clone._run(shared)
            curr = self.get_next_node(curr, last_action)
        return last_action
    async def _run_async(self, shared): p = await self.prep_async(shared); o = await self._orch_async(shared); return await self.post_async(shared, p, o)
    async def run_async(self, shared):
        if self.successors: self._warn("Node won't run successors. Use AsyncFlow.")
        return await self._run_async(shared)
    def _run(self, shared): raise RuntimeError(f"{type(self).__name__} is asynchronous. Use run_async.")

class AsyncBatchFlow(AsyncFlow, BatchFlow):
    async def _run_async(self, shared):
        pr = await self.prep_async(shared)
        batch = self._batch_params(pr)
        if batch is None: return await self.post_async(shared, pr, None)
        for bp in batch: await self._orch_async(shared, {**self.params, **bp})
        return await self.post_async(shared, pr if pr is not None else [], None)

class AsyncParallelBatchFlow(AsyncFlow, BatchFlow):
    def __init__(self, start=None, concurrency_limit=None, channel=None):
        super().__init__(start, channel=channel)
        _check_concurrency_limit(concurrency_limit); self.concurrency_limit = concurrency_limit
    async def _run_async(self, shared):
        pr = await self.prep_async(shared)
        batch = self._batch_params(pr)
        if batch is None: return await self.post_async(shared, pr, None)
        if self.concurrency_limit is None:
            await asyncio.gather(*(self._orch_async(shared, {**self.params, **bp}) for bp in batch))
        else:
            sem = asyncio.Semaphore(self.concurrency_limit)
            async def bounded(bp):
                async with sem: return await self._orch_async(shared, {**self.params, **bp})
            await asyncio.gather(*(bounded(bp) for bp in batch))
        return await self.post_async(shared, pr if pr is not None else [], None)
