import logging
import threading
from abc import abstractmethod
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Tuple,
    Type,
    Union,
)

from ndgrad.errors import ArityError, ShapeError
from ndgrad.ndarray import NDArray

logger = logging.getLogger(__name__)

# Backward passes mutate grad slots across a whole subgraph, so only one
# traversal runs at a time.
_GRAD_LOCK = threading.RLock()


class Context:
    """
    Per-call record of what an operation consumed.

    A fresh ``Context`` is opened every time a :class:`Function` is applied.
    The forward rule fills it, and the backward rule reads it back.

    Attributes:
        saved_tensors (List[Tensor]): The input tensors in input order. Backward
            gradients are delivered to them in this same order.
        saved_data (List[Any]): Extra values the forward rule wants to keep
            for the backward rule, such as input shapes.
    """

    def __init__(self) -> None:
        self.saved_tensors: List["Tensor"] = []
        self.saved_data: List[Any] = []

    def save_for_backward(self, *tensors: "Tensor") -> None:
        self.saved_tensors.extend(tensors)


class Function:
    """
    Base class for differentiable operations.

    Subclasses implement ``forward`` and ``backward``. The set of operations
    is closed: every concrete subclass is listed in :data:`OPERATIONS`.
    """

    name: str = ""

    @abstractmethod
    def forward(self, ctx: Context, *inputs: "Tensor") -> NDArray:
        """
        Compute the output data and record what backward needs in ``ctx``.

        Args:
            ctx (Context): The fresh context for this call.
            *inputs (Tensor): The input tensors.

        Returns:
            NDArray: The output data.
        """
        raise NotImplementedError("Forward pass not implemented for this function")

    @abstractmethod
    def backward(
        self, ctx: Context, grad_output: NDArray
    ) -> Tuple[Optional[NDArray], ...]:
        """
        Compute one gradient per saved input from the gradient of the output.

        In this context:
        - ``grad_output`` is dL/d[out], with the output's (broadcast) shape.
        - The return value holds dL/d[input] for every entry of
          ``ctx.saved_tensors``, each reduced to that input's own shape.

        Args:
            ctx (Context): The context filled by ``forward``.
            grad_output (NDArray): The gradient with respect to the output.

        Returns:
            Tuple[Optional[NDArray], ...]: The gradients with respect to the inputs.
        """
        raise NotImplementedError("Backward pass not implemented for this function")

    @classmethod
    def apply(cls, *tensors: "Tensor") -> "Tensor":
        """
        Run this operation on ``tensors`` and record it in the graph.

        This method:
        1) Opens an empty :class:`Context`.
        2) Runs ``forward`` on the inputs.
        3) Wraps the output in a new :class:`Tensor` holding ``(function, context)``.

        Args:
            *tensors (Tensor): Input tensors to the operation.

        Returns:
            Tensor: The resulting tensor.
        """
        func = cls()
        ctx = Context()
        out_data = func.forward(ctx, *tensors)

        requires_grad = any(inp.requires_grad for inp in tensors)
        return Tensor(out_data, creator=(func, ctx), requires_grad=requires_grad)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class Tensor:
    """
    A node in the computation graph.

    A ``Tensor`` holds its forward value ``data``, an optional ``creator``
    pair of :class:`Function` and :class:`Context` describing how it was
    produced, and a gradient slot that only :meth:`backward` writes to.
    Producer tensors are referenced from the creator's context, so one tensor
    can feed many consumers.
    """

    def __init__(
        self,
        data: Union[NDArray, Any],
        creator: Optional[Tuple[Function, Context]] = None,
        requires_grad: bool = True,
    ):
        """
        Initialize a ``Tensor``.

        Args:
            data (Union[NDArray, Any]): The value. Anything other than an
                ``NDArray`` is converted with :meth:`NDArray.array`.
            creator (Optional[Tuple[Function, Context]], optional): The
                operation and context that produced this tensor. ``None`` for
                leaf tensors.
            requires_grad (bool, optional): Whether gradients should be
                accumulated for this tensor. Defaults to True.
        """
        self._data = data if isinstance(data, NDArray) else NDArray.array(data)
        self._creator = creator
        self._grad: Optional[NDArray] = None  # Lazily initialized
        self.requires_grad = requires_grad

    @property
    def data(self) -> NDArray:
        return self._data

    @property
    def creator(self) -> Optional[Tuple[Function, Context]]:
        return self._creator

    @property
    def grad(self) -> Optional[NDArray]:
        """
        The accumulated gradient, or ``None`` if no backward pass reached this tensor.
        """
        return self._grad

    @property
    def is_leaf(self) -> bool:
        return self._creator is None

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._data.shape

    def add(self, other: Union["Tensor", NDArray, Any]) -> "Tensor":
        """
        Element-wise addition of two tensors with equal-rank broadcasting.

        Args:
            other (Union[Tensor, NDArray, Any]): The tensor to add. Anything
                else is wrapped in a tensor that does not require grad.

        Returns:
            Tensor: The result of addition.
        """
        if not isinstance(other, Tensor):
            other = Tensor(other, requires_grad=False)
        return Add.apply(self, other)

    def __add__(self, other: Union["Tensor", NDArray, Any]) -> "Tensor":
        return self.add(other)

    def __radd__(self, other: Union["Tensor", NDArray, Any]) -> "Tensor":
        if not isinstance(other, Tensor):
            other = Tensor(other, requires_grad=False)
        return Add.apply(other, self)

    def backward(self, grad: Optional[Union[NDArray, Any]] = None) -> None:
        """
        Compute gradients for this tensor and every ancestor that requires grad.

        1. Walk producer links from this tensor and count, for every reachable
           tensor, how many gradient contributions it will receive.
        2. Seed this tensor's incoming gradient with ``grad`` (ones by default).
        3. Process tensors in reverse topological order. A tensor is only
           propagated further once all of its contributions have arrived and
           been summed, so shared sub-expressions receive the full gradient.

        As a side effect, each reached tensor accumulates into its ``grad``
        slot. Calling backward again adds to the existing gradients.

        Args:
            grad (Optional[Union[NDArray, Any]]): The gradient with respect to
                this tensor. Must have this tensor's shape.

        Raises:
            ShapeError: If ``grad`` does not match this tensor's shape.
        """
        if not self.requires_grad:
            logger.debug("backward() called on a tensor that does not require grad")
            return

        if grad is None:
            seed = NDArray.ones_like(self._data)
        elif isinstance(grad, Tensor):
            seed = grad.data
        elif isinstance(grad, NDArray):
            seed = grad
        else:
            seed = NDArray.array(grad)
        if seed.shape != self.shape:
            raise ShapeError(
                f"Gradient of shape {seed.shape} does not match tensor of shape {self.shape}"
            )

        with _GRAD_LOCK:
            pending = self._count_pending()
            logger.debug("Backward pass over %d tensors", len(pending) + 1)

            incoming: Dict[Tensor, NDArray] = {self: seed}
            ready: List[Tensor] = [self]
            while ready:
                node = ready.pop()
                node_grad = incoming.pop(node)
                node._accumulate_grad(node_grad)

                if node._creator is None:
                    continue

                func, ctx = node._creator
                grads = func.backward(ctx, node_grad)
                if not isinstance(grads, tuple):
                    grads = (grads,)
                if len(grads) != len(ctx.saved_tensors):
                    raise ArityError(
                        f"{func!r} returned {len(grads)} gradients for "
                        f"{len(ctx.saved_tensors)} inputs"
                    )

                for parent, g in zip(ctx.saved_tensors, grads):
                    if not parent.requires_grad:
                        continue
                    if g is not None:
                        incoming[parent] = (
                            incoming[parent].add(g) if parent in incoming else g
                        )
                    pending[parent] -= 1
                    if pending[parent] == 0:
                        if parent in incoming:
                            ready.append(parent)
                        del pending[parent]

    def _count_pending(self) -> Dict["Tensor", int]:
        """
        Count gradient contributions per reachable ancestor.

        Every (consumer, input slot) edge counts once, so a tensor used twice
        by the same operation expects two contributions.

        Returns:
            Dict[Tensor, int]: Contribution counts for every ancestor that
            requires grad. ``self`` is not included.
        """
        pending: Dict[Tensor, int] = {}
        visited = {self}
        stack = [self]
        while stack:
            node = stack.pop()
            if node._creator is None:
                continue
            _, ctx = node._creator
            for parent in ctx.saved_tensors:
                if not parent.requires_grad:
                    continue
                pending[parent] = pending.get(parent, 0) + 1
                if parent not in visited:
                    visited.add(parent)
                    stack.append(parent)
        return pending

    def _accumulate_grad(self, grad: NDArray) -> None:
        """
        Set or add to this tensor's gradient.

        Args:
            grad (NDArray): The gradient to accumulate.

        Raises:
            ShapeError: If ``grad`` does not have this tensor's shape.
        """
        if grad.shape != self.shape:
            raise ShapeError(
                f"Gradient of shape {grad.shape} does not match tensor of shape {self.shape}"
            )
        if self._grad is None:
            self._grad = NDArray(grad.buf, grad.shape)
        else:
            self._grad = self._grad.add(grad)

    def zero_grad(self) -> None:
        with _GRAD_LOCK:
            self._grad = None

    def detach(self) -> "Tensor":
        """
        Return a new leaf tensor sharing this tensor's data but not its history.

        Returns:
            Tensor: A new tensor that does not track gradients.
        """
        return Tensor(self._data, requires_grad=False)

    def __repr__(self) -> str:
        return f"Tensor(data={self._data}, grad={self._grad})"


"""
Binary Ops
"""


class Add(Function):
    """Element-wise addition of two tensors.
    See :func:`ndgrad.tensor.Tensor.add`
    """

    name = "add"

    def forward(self, ctx: Context, *inputs: Tensor) -> NDArray:
        """Compute the broadcasting sum of two tensors.

        Args:
            ctx (Context): Receives both inputs, in order.
            *inputs (Tensor): Exactly two tensors of equal rank.

        Returns:
            NDArray: The element-wise sum.

        Raises:
            ArityError: If not exactly two inputs are given.
        """
        if len(inputs) != 2:
            raise ArityError(f"Add expects 2 inputs, got {len(inputs)}")
        x, y = inputs
        out = x.data.add(y.data)
        ctx.save_for_backward(x, y)
        ctx.saved_data.extend([x.shape, y.shape])  # for backward unbroadcast
        return out

    def backward(
        self, ctx: Context, grad_output: NDArray
    ) -> Tuple[NDArray, NDArray]:
        """Compute the gradient for the addition operation.

        Addition is linear, so each input receives ``grad_output`` summed back
        down over whichever axes were broadcast for it.

        Args:
            ctx (Context): The context filled by ``forward``.
            grad_output (NDArray): The gradient with respect to the output.

        Returns:
            Tuple[NDArray, NDArray]: The gradients with respect to ``x`` and ``y``.
        """
        x_shape, y_shape = ctx.saved_data
        return grad_output.sum_to(x_shape), grad_output.sum_to(y_shape)


OPERATIONS: Dict[str, Type[Function]] = {
    Add.name: Add,
}
