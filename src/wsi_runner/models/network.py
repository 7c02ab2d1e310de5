"""
Network Execution
=================

Backend-configurable network object used by the pipeline assembler.

A :class:`Network` is configured in the same order for every backend: pick
the backend, declare input/output nodes (only where the backend needs them),
set the intensity scale, then load the artifact. Execution is delegated to a
runtime session opened by a *runtime factory*; the default factory,
:func:`open_runtime`, imports the Python runtime of the backend lazily so only
the runtimes actually used have to be installed.

Classes
-------
NodeSpec
    Name and optional shape of a network node
Network
    Configurable, loadable network
TensorFlowShapes, ChannelFirstShapes, InferredShapes
    Shape declaration strategies per backend family

Functions
---------
open_runtime
    Default runtime factory (onnxruntime, openvino, tensorflow)
configure_shapes
    Apply the shape strategy of the selected backend to a network

See Also
--------
wsi_runner.core.engine_resolver : Selects backend and format before loading
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from wsi_runner.core.backends import Backend
from wsi_runner.core.errors import ArtifactIOError, BackendUnavailableError, FormatMismatchError

logger = logging.getLogger(__name__)


@dataclass
class NodeSpec:
    name: str
    shape: Optional[Tuple[int, ...]] = None


class RuntimeSession:
    """
    Minimal interface of an opened model.

    Subclasses expose ``input_shape`` (may contain ``None``/-1 for dynamic
    dimensions) and ``run(x) -> list of arrays``.
    """

    input_shape: Optional[Tuple] = None

    def run(self, x: np.ndarray) -> List[np.ndarray]:
        raise NotImplementedError

    def close(self):
        pass


class _OnnxSession(RuntimeSession):
    _PROVIDERS = {
        Backend.TENSORRT: ["TensorrtExecutionProvider", "CUDAExecutionProvider", "CPUExecutionProvider"],
        Backend.OPENVINO: ["OpenVINOExecutionProvider", "CPUExecutionProvider"],
    }

    def __init__(self, backend: Backend, path: Path, device: str):
        try:
            import onnxruntime as ort
        except ImportError as e:
            raise BackendUnavailableError(f"onnxruntime is required to run {backend.value} with ONNX") from e
        available = set(ort.get_available_providers())
        wanted = ["CPUExecutionProvider"] if device == "CPU" else self._PROVIDERS[backend]
        providers = [p for p in wanted if p in available] or ["CPUExecutionProvider"]
        logger.info("onnxruntime providers for %s: %s", backend.value, providers)
        self._session = ort.InferenceSession(str(path), providers=providers)
        inp = self._session.get_inputs()[0]
        self._input_name = inp.name
        self.input_shape = tuple(d if isinstance(d, int) else None for d in inp.shape)

    def run(self, x):
        return list(self._session.run(None, {self._input_name: x}))


class _OpenVINOSession(RuntimeSession):
    def __init__(self, path: Path, device: str):
        try:
            import openvino as ov
        except ImportError as e:
            raise BackendUnavailableError("openvino is required to run OpenVINO IR models") from e
        core = ov.Core()
        self._compiled = core.compile_model(str(path), "CPU" if device == "CPU" else "AUTO")
        shape = self._compiled.inputs[0].get_partial_shape()
        self.input_shape = tuple(d.get_length() if d.is_static else None for d in shape)

    def run(self, x):
        result = self._compiled(x)
        return [np.asarray(result[out]) for out in self._compiled.outputs]


class _TensorFlowSession(RuntimeSession):
    def __init__(self, path: Path, device: str, inputs: Dict[int, NodeSpec], outputs: Dict[int, NodeSpec]):
        try:
            import tensorflow as tf
        except ImportError as e:
            raise BackendUnavailableError("tensorflow is required to run frozen .pb models") from e
        if 0 not in inputs or not outputs:
            raise FormatMismatchError("TensorFlow models need named input and output nodes")
        graph_def = tf.compat.v1.GraphDef()
        graph_def.ParseFromString(Path(path).read_bytes())
        graph = tf.Graph()
        with graph.as_default():
            tf.compat.v1.import_graph_def(graph_def, name="")
        config = tf.compat.v1.ConfigProto()
        if device == "CPU":
            config.device_count["GPU"] = 0
        self._session = tf.compat.v1.Session(graph=graph, config=config)
        self._input = graph.get_tensor_by_name(inputs[0].name + ":0")
        self._outputs = [graph.get_tensor_by_name(outputs[i].name + ":0") for i in sorted(outputs)]
        self.input_shape = inputs[0].shape

    def run(self, x):
        return list(self._session.run(self._outputs, feed_dict={self._input: x}))

    def close(self):
        self._session.close()


def open_runtime(
    backend: Backend,
    path: Path,
    device: str,
    inputs: Dict[int, NodeSpec],
    outputs: Dict[int, NodeSpec],
) -> RuntimeSession:
    """
    Open a model artifact with the Python runtime matching its backend.

    ``.onnx`` artifacts run on onnxruntime with the TensorRT or OpenVINO
    execution provider, ``.xml`` IR on openvino, ``.pb`` on tensorflow.

    Raises
    ------
    BackendUnavailableError
        When the runtime is not importable, or for ``.uff`` which has no
        maintained Python runtime
    """
    fmt = Path(path).suffix.lstrip(".")
    if fmt == "onnx":
        return _OnnxSession(backend, path, device)
    if fmt == "xml":
        return _OpenVINOSession(path, device)
    if fmt == "pb":
        return _TensorFlowSession(path, device, inputs, outputs)
    raise BackendUnavailableError(f"No Python runtime available for {backend.value} with .{fmt} models")


class Network:
    """
    Network stage configurable by backend.

    Parameters
    ----------
    runtime_factory : callable, optional
        ``factory(backend, path, device, inputs, outputs) -> RuntimeSession``;
        defaults to :func:`open_runtime`

    Examples
    --------
    >>> net = Network()
    >>> net.set_inference_engine(Backend.OPENVINO)
    >>> net.set_scale_factor(1 / 255)
    >>> net.load("models/tumor/tumor.xml")  # doctest: +SKIP
    >>> outputs = net.process(patch)  # doctest: +SKIP
    """

    def __init__(self, runtime_factory: Optional[Callable] = None):
        self._factory = runtime_factory or open_runtime
        self.backend: Optional[Backend] = None
        self.device = "ANY"
        self.input_nodes: Dict[int, NodeSpec] = {}
        self.output_nodes: Dict[int, NodeSpec] = {}
        self.scale_factor = 1.0
        self.path: Optional[Path] = None
        self._session: Optional[RuntimeSession] = None

    def set_inference_engine(self, backend: Backend, device: str = "ANY"):
        self.backend = backend
        self.device = device

    def set_input_node(self, index: int, name: str, shape: Sequence[int] = None):
        self.input_nodes[index] = NodeSpec(name, tuple(shape) if shape is not None else None)

    def set_output_node(self, index: int, name: str, shape: Sequence[int] = None):
        self.output_nodes[index] = NodeSpec(name, tuple(shape) if shape is not None else None)

    def set_scale_factor(self, factor: float):
        self.scale_factor = float(factor)

    @property
    def loaded(self) -> bool:
        return self._session is not None

    def load(self, path):
        """
        Open the artifact at ``path`` with the configured backend.

        Raises
        ------
        FormatMismatchError
            If no backend is set or the backend cannot consume the extension
        ArtifactIOError
            If the file does not exist
        """
        path = Path(path)
        if self.backend is None:
            raise FormatMismatchError("An inference engine must be selected before loading a network")
        if not self.backend.can_consume(path.suffix):
            raise FormatMismatchError(f"{self.backend.value} cannot load {path.suffix} models")
        if not path.is_file():
            raise ArtifactIOError(f"Model file not found: {path}")
        self._session = self._factory(self.backend, path, self.device, self.input_nodes, self.output_nodes)
        self.path = path
        logger.info("Loaded %s on %s (device %s)", path.name, self.backend.value, self.device)

    def _layout(self, x: np.ndarray) -> np.ndarray:
        shape = self._session.input_shape
        channels = x.shape[-1]
        if shape and len(shape) == 4 and shape[1] == channels and shape[3] != channels:
            return np.ascontiguousarray(x.transpose(0, 3, 1, 2))
        return x

    def process(self, image: np.ndarray) -> List[np.ndarray]:
        """
        Run the network on one image.

        Parameters
        ----------
        image : np.ndarray
            ``(H, W)`` or ``(H, W, C)`` array

        Returns
        -------
        list of np.ndarray
            One array per output node, batch dimension kept
        """
        if not self.loaded:
            raise RuntimeError("Network.process() called before load()")
        x = np.asarray(image, dtype=np.float32)
        if x.ndim == 2:
            x = x[..., None]
        x = x[None] * self.scale_factor
        return self._session.run(self._layout(x))

    def close(self):
        if self._session is not None:
            self._session.close()
            self._session = None


# ---------------------------------------------------------------------------
# Shape strategies
# ---------------------------------------------------------------------------

class InferredShapes:
    """Backends that read node names and shapes from the artifact itself."""

    def configure(self, network: Network, config, fmt: str):
        pass


class TensorFlowShapes:
    """TensorFlow needs explicit named nodes and NHWC shapes."""

    def configure(self, network: Network, config, fmt: str):
        network.set_input_node(
            0, config.input_node, (1, config.input_height, config.input_width, config.channels)
        )
        if config.problem.value == "segmentation":
            out_shape = (1, config.input_height, config.input_width, config.nb_classes)
        else:
            out_shape = (1, config.nb_classes)
        network.set_output_node(0, config.output_node, out_shape)


class ChannelFirstShapes:
    """TensorRT with UFF artifacts needs NCHW input and explicit output shape."""

    def configure(self, network: Network, config, fmt: str):
        if fmt != "uff":
            return
        network.set_input_node(
            0, config.input_node, (1, config.channels, config.input_height, config.input_width)
        )
        network.set_output_node(0, config.output_node, (1, config.nb_classes))


SHAPE_STRATEGIES = {
    Backend.TENSORFLOW: TensorFlowShapes(),
    Backend.TENSORRT: ChannelFirstShapes(),
    Backend.OPENVINO: InferredShapes(),
}


def configure_shapes(network: Network, config, fmt: str):
    """Declare nodes on ``network`` as its backend requires."""
    SHAPE_STRATEGIES[network.backend].configure(network, config, fmt)
