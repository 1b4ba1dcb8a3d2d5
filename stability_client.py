"""
Stability AI gRPC Client
========================
A small client for the Stability AI generation service. It opens one
TLS channel authenticated with a bearer token, sends a generation request
over the server-streaming ``Generate`` call and collects the answers that
carry artifacts.

Usage:
    from stability_client import StabilityClient, with_api_key

    with StabilityClient(with_api_key("sk-...")) as client:
        answers = client.generate_image("a lighthouse at dusk", 512, 512)

Requirements:
    pip install grpcio protobuf stability-sdk
"""

import enum
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Tuple

import grpc
from google.protobuf import text_format

import stability_sdk.interfaces.gooseai.generation.generation_pb2 as generation
import stability_sdk.interfaces.gooseai.generation.generation_pb2_grpc as generation_grpc


# ============================================================================
# CONFIGURATION
# ============================================================================

DEFAULT_API_HOST = "grpc.stability.ai:443"
DEFAULT_ENGINE = "stable-diffusion-v1"
DEFAULT_STEPS = 50
DEFAULT_SAMPLES = 1
DEFAULT_CFG_SCALE = 7.0
DEFAULT_SAMPLER = generation.SAMPLER_K_LMS
DEFAULT_CONNECT_TIMEOUT = 30  # seconds
LOGGER_NAME = "stabilityai"

_MAX_SEED = 0xFFFFFFFF


@dataclass
class GenerationDefaults:
    """Sampler settings used when building image requests."""

    steps: int = DEFAULT_STEPS
    samples: int = DEFAULT_SAMPLES
    cfg_scale: float = DEFAULT_CFG_SCALE
    sampler: int = DEFAULT_SAMPLER


@dataclass
class ClientConfig:
    """
    Settings of a StabilityClient.

    Attributes:
        api_host: gRPC endpoint as ``host:port``
        api_key: Bearer token sent with every call
        engine: Engine identifier placed in each request
        logger: Sink for client log records
        timeout: Deadline in seconds for a streaming call (None = no deadline)
        connect_timeout: Seconds to wait for the channel to become ready
        defaults: Sampler settings for generate_image
    """

    api_host: str = DEFAULT_API_HOST
    api_key: str = ""
    engine: str = DEFAULT_ENGINE
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(LOGGER_NAME))
    timeout: Optional[float] = None
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    defaults: GenerationDefaults = field(default_factory=GenerationDefaults)


class ConnectionState(enum.Enum):
    UNCONNECTED = "unconnected"
    CONNECTED = "connected"
    BROKEN = "broken"


# ============================================================================
# CUSTOM EXCEPTIONS
# ============================================================================

class StabilityError(Exception):
    """Base exception for Stability AI client errors"""
    pass


class APIConnectionError(StabilityError):
    """The channel to the API could not be established or is unusable"""
    pass


class StreamError(StabilityError):
    """The streaming call failed before reaching its end"""

    def __init__(self, message: str, code: Optional[grpc.StatusCode] = None, details: str = ""):
        super().__init__(message)
        self.code = code
        self.details = details


# ============================================================================
# OPTIONS
# ============================================================================

Option = Callable[[ClientConfig], None]


def with_api_host(host: str) -> Option:
    """Set the API host for the client."""
    def apply(config: ClientConfig) -> None:
        config.api_host = host
    return apply


def with_api_key(api_key: str) -> Option:
    """Set the API key for the client."""
    def apply(config: ClientConfig) -> None:
        config.api_key = api_key
    return apply


def with_engine(engine: str) -> Option:
    """Set the engine for the client."""
    def apply(config: ClientConfig) -> None:
        config.engine = engine
    return apply


def with_logger(logger: logging.Logger) -> Option:
    """Set the logger for the client."""
    def apply(config: ClientConfig) -> None:
        config.logger = logger
    return apply


def with_timeout(timeout: Optional[float]) -> Option:
    """Set the per-call deadline, in seconds, for streaming calls."""
    def apply(config: ClientConfig) -> None:
        config.timeout = timeout
    return apply


def with_connect_timeout(timeout: float) -> Option:
    """Set how many seconds connect() waits for the channel to become ready."""
    def apply(config: ClientConfig) -> None:
        config.connect_timeout = timeout
    return apply


def with_defaults(defaults: GenerationDefaults) -> Option:
    """Set the sampler settings used by generate_image."""
    def apply(config: ClientConfig) -> None:
        config.defaults = defaults
    return apply


# ============================================================================
# REQUEST BUILDING
# ============================================================================

def random_seed() -> int:
    """
    Draw a 32-bit seed from a generator seeded with the wall-clock time.

    Not reproducible and not suitable for anything security related.
    """
    rng = random.Random(time.time_ns())
    return rng.randrange(_MAX_SEED)


def build_image_request(
    engine: str,
    text: str,
    width: int,
    height: int,
    defaults: Optional[GenerationDefaults] = None,
    seed: Optional[int] = None,
    request_id: Optional[str] = None
) -> generation.Request:
    """
    Build a text-to-image request with a single text prompt.

    Args:
        engine: Engine identifier
        text: Prompt text
        width: Image width in pixels
        height: Image height in pixels
        defaults: Sampler settings (GenerationDefaults() if omitted)
        seed: Image seed (random_seed() if omitted)
        request_id: Request identifier (a fresh UUID4 if omitted)

    Returns:
        A populated generation Request
    """
    if defaults is None:
        defaults = GenerationDefaults()
    if seed is None:
        seed = random_seed()
    if request_id is None:
        request_id = str(uuid.uuid4())

    image = generation.ImageParameters(
        width=width,
        height=height,
        seed=[seed],
        steps=defaults.steps,
        samples=defaults.samples,
        transform=generation.TransformType(diffusion=defaults.sampler),
        parameters=[
            generation.StepParameter(
                scaled_step=0,
                sampler=generation.SamplerParameters(cfg_scale=defaults.cfg_scale),
            )
        ],
    )
    return generation.Request(
        engine_id=engine,
        request_id=request_id,
        requested_type=generation.ARTIFACT_IMAGE,
        prompt=[generation.Prompt(text=text)],
        image=image,
    )


# ============================================================================
# CLIENT CLASS
# ============================================================================

class StabilityClient:
    """
    Client for the Stability AI generation service.

    The connection is opened lazily on the first generation call unless
    connect() is called first. A failed stream marks the connection broken;
    it must be re-established with connect() before the client is reused.
    """

    def __init__(self, *options: Option):
        """
        Initialize the client.

        Args:
            *options: Option callables, applied in order (last one wins)
        """
        self.config = ClientConfig()
        for option in options:
            option(self.config)

        self.state = ConnectionState.UNCONNECTED
        self._channel: Optional[grpc.Channel] = None
        self._stub = None

    @property
    def log(self) -> logging.Logger:
        """The logger records are written to."""
        return self.config.logger

    def __enter__(self) -> "StabilityClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def connect(self) -> None:
        """
        Open the authenticated TLS channel and bind the generation stub.

        Raises:
            APIConnectionError: If the channel is not ready within
                connect_timeout seconds
        """
        credentials = grpc.composite_channel_credentials(
            grpc.ssl_channel_credentials(),
            grpc.access_token_call_credentials(self.config.api_key),
        )
        self.log.info("Dialling %s", self.config.api_host)
        channel = grpc.secure_channel(self.config.api_host, credentials)
        try:
            grpc.channel_ready_future(channel).result(timeout=self.config.connect_timeout)
        except grpc.FutureTimeoutError as e:
            channel.close()
            raise APIConnectionError(
                f"Cannot connect to {self.config.api_host} "
                f"within {self.config.connect_timeout}s"
            ) from e

        if self._channel is not None:
            self._channel.close()
        self._channel = channel
        self._stub = generation_grpc.GenerationServiceStub(channel)
        self.state = ConnectionState.CONNECTED

    def close(self) -> None:
        """Close the channel, if any, and return to the unconnected state."""
        if self._channel is not None:
            self._channel.close()
        self._channel = None
        self._stub = None
        self.state = ConnectionState.UNCONNECTED

    def _ensure_connected(self) -> None:
        """
        Connect lazily when unconnected.

        Raises:
            APIConnectionError: If the connection is broken or connecting fails
        """
        if self.state is ConnectionState.BROKEN:
            raise APIConnectionError(
                "Connection is broken after a failed stream; call connect() to reconnect"
            )
        if self.state is ConnectionState.UNCONNECTED:
            self.connect()

    def iter_answers(self, request: generation.Request) -> Iterator[generation.Answer]:
        """
        Stream the answers to a request, skipping answers without artifacts.

        Answers are yielded in arrival order.

        Raises:
            APIConnectionError: If the lazy connect fails or the connection
                is broken
            StreamError: If the call fails before the end of the stream
        """
        self._ensure_connected()
        self.log.info("Request: %s", text_format.MessageToString(request, as_one_line=True))

        try:
            for answer in self._stub.Generate(request, timeout=self.config.timeout):
                if len(answer.artifacts) == 0:
                    self.log.debug("Dropping answer %s without artifacts", answer.answer_id)
                    continue
                yield answer
        except grpc.RpcError as e:
            self.state = ConnectionState.BROKEN
            code, details = _rpc_status(e)
            self.log.warning("Stream failed, marking connection broken: %s", e)
            raise StreamError(f"Generate stream failed: {code}: {details}", code, details) from e

    def generate(self, request: generation.Request) -> List[generation.Answer]:
        """
        Send a request and collect every answer that carries artifacts.

        Either the whole stream is returned or an exception is raised; no
        partial results are handed back.

        Args:
            request: A populated generation Request

        Returns:
            Answers with at least one artifact, in arrival order

        Raises:
            APIConnectionError: If the channel cannot be used
            StreamError: If the stream fails
        """
        return list(self.iter_answers(request))

    def generate_image(self, text: str, width: int, height: int) -> List[generation.Answer]:
        """
        Generate an image from a text prompt using the configured defaults.

        A random seed and a fresh request identifier are used on every call.
        """
        request = build_image_request(
            self.config.engine,
            text,
            width,
            height,
            defaults=self.config.defaults,
        )
        return self.generate(request)


def _rpc_status(error: grpc.RpcError) -> Tuple[Optional[grpc.StatusCode], str]:
    """Return the status code and details of a failed call, when it carries them."""
    # Stream errors are also grpc.Call objects carrying the status.
    if isinstance(error, grpc.Call):
        return error.code(), error.details()
    return None, str(error)
