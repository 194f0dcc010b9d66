"""
Reverse-mode autodiff node.

A Tensor wraps an `np.ndarray` and, when produced by an op, remembers the
`Function` that created it. Calling `backward()` on a scalar result walks the
graph in reverse topological order and accumulates ∂ℒ/∂x into `.grad` of
every tensor that requires it.

Precision:
The dtype used for new tensors is process-wide. float32 is the default, which
is what training wants; gradient checks need float64 because a central
difference with ε ≈ 1e-6 loses every significant digit in single precision.

    with default_dtype(np.float64):
        network = build_network(spec)
"""

from contextlib import contextmanager
from typing import Iterator, List, Optional

import numpy as np

_DEFAULT_DTYPE = np.dtype(np.float32)


def get_default_dtype() -> np.dtype:
  return _DEFAULT_DTYPE


def set_default_dtype(dtype) -> None:
  global _DEFAULT_DTYPE
  dtype = np.dtype(dtype)
  if not np.issubdtype(dtype, np.floating):
    raise TypeError(f"Default dtype must be a floating type, got {dtype}")
  _DEFAULT_DTYPE = dtype


@contextmanager
def default_dtype(dtype) -> Iterator[np.dtype]:
  previous = _DEFAULT_DTYPE
  set_default_dtype(dtype)
  try:
    yield _DEFAULT_DTYPE
  finally:
    set_default_dtype(previous)


def _operator(op_name: str, reflected: bool = False):
  """Tensor dunder method dispatching to `ops.<op_name>`; operands are wrapped."""

  def method(self, other):
    from . import ops

    other = other if isinstance(other, Tensor) else Tensor(other)
    op = getattr(ops, op_name)
    return op(other, self) if reflected else op(self, other)

  method.__name__ = f"__{'r' if reflected else ''}{op_name}__"
  return method


class Tensor:
  __slots__ = ("data", "grad", "requires_grad", "_ctx", "shape")

  def __init__(self, data, requires_grad: bool = False):
    self.data = np.asarray(data, dtype=_DEFAULT_DTYPE)
    self.shape = self.data.shape
    self.requires_grad = requires_grad
    self.grad: Optional["Tensor"] = None
    self._ctx = None

  def __repr__(self):
    return (
      f"Tensor(shape={self.shape}, dtype={self.data.dtype}, "
      f"requires_grad={self.requires_grad})"
    )

  __add__ = _operator("add")
  __radd__ = _operator("add", reflected=True)
  __sub__ = _operator("sub")
  __rsub__ = _operator("sub", reflected=True)
  __mul__ = _operator("mul")
  __rmul__ = _operator("mul", reflected=True)
  __truediv__ = _operator("div")
  __rtruediv__ = _operator("div", reflected=True)
  __matmul__ = _operator("matmul")

  def __neg__(self):
    from .ops import neg

    return neg(self)

  def __float__(self):
    if self.data.size != 1:
      raise TypeError(f"Only single-element tensors convert to float, got shape {self.shape}")
    return float(self.data.reshape(()))

  def __array__(self, dtype=None, copy=None):
    return self.data if dtype is None else self.data.astype(dtype)

  def reshape(self, *shape):
    from .ops import reshape

    if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
      shape = tuple(shape[0])
    return reshape(self, shape)

  def sum(self, axis=None, keepdims=False):
    from .ops import sum as _sum

    return _sum(self, axis, keepdims)

  def mean(self, axis=None, keepdims=False):
    from .ops import mean as _mean

    return _mean(self, axis, keepdims)

  def _graph(self) -> List["Tensor"]:
    """Tensors reachable from self, parents before children."""
    order: List[Tensor] = []
    visited: set[int] = set()
    stack = [(self, False)]
    while stack:
      node, expanded = stack.pop()
      if expanded:
        order.append(node)
        continue
      if id(node) in visited:
        continue
      visited.add(id(node))
      stack.append((node, True))
      if node._ctx is not None:
        stack.extend((parent, False) for parent in node._ctx.parents)
    return order

  def backward(self, gradient=None):
    """
    Backpropagate from this tensor.

    `gradient` is ∂ℒ/∂self; it defaults to ones, which is right when self is
    the scalar loss. Losses in `losses.py` hand back their own ∂ℒ/∂output so
    a network calls `output.backward(loss_gradient)` instead.

    Gradients are accumulated, never overwritten, on every tensor except the
    starting one: a tensor that feeds several ops receives the sum of the
    contributions. Call `Module.zero_grad()` between passes.
    """
    if not self.requires_grad:
      return
    if gradient is None:
      gradient = np.ones_like(self.data)
    self.grad = gradient if isinstance(gradient, Tensor) else Tensor(gradient)

    for node in reversed(self._graph()):
      if node._ctx is None or node.grad is None:
        continue
      parent_gradients = node._ctx.backward(node.grad.data)
      if not isinstance(parent_gradients, tuple):
        parent_gradients = (parent_gradients,)
      for parent, parent_gradient in zip(node._ctx.parents, parent_gradients):
        if parent_gradient is None or not parent.requires_grad:
          continue
        if parent.grad is None:
          parent.grad = Tensor(np.array(parent_gradient))
        else:
          parent.grad.data += parent_gradient
