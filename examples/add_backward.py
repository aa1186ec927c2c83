from ndgrad.logger import setup_logger
from ndgrad.ndarray import NDArray
from ndgrad.tensor import Tensor

logger = setup_logger(__name__)


def main():
    # create tensors
    a = Tensor(NDArray.new([1, 2, 3], [3, 1]))
    b = Tensor(NDArray.new([4, 5, 6], [3, 1]))

    # c = a + b
    c = a.add(b)

    # backpropagation
    c.backward()

    logger.info(f"Gradient of a: {a.grad.buf.tolist()}")
    logger.info(f"Gradient of b: {b.grad.buf.tolist()}")


if __name__ == "__main__":
    main()
