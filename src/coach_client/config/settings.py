import os
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field
from dotenv import load_dotenv
import logging

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are an interview coach. Provide feedback on the user's interview performance. "
    "Be concise and specific."
)


class CoachClientConfig(BaseModel):
    gemini_api_key: str = Field(..., min_length=1, description="API key for the Gemini streaming endpoint")
    model: str = Field(default="gemini-2.0-flash-exp", description="Model used for the streaming session")
    service_host: str = Field(default="generativelanguage.googleapis.com", description="Streaming service host")
    api_version: str = Field(default="v1beta", description="Streaming API version path segment")
    system_instruction: str = Field(default=DEFAULT_SYSTEM_INSTRUCTION, description="System instruction sent in the session setup")
    temperature: float = Field(default=0.7, ge=0.0, description="Sampling temperature")
    sample_rate: int = Field(default=44100, gt=0, description="Capture sample rate in Hz")
    channel_count: int = Field(default=1, ge=1, description="Number of capture channels")
    buffer_size: int = Field(default=4096, gt=0, description="Samples per processing block")
    input_device: Optional[int] = Field(default=None, description="sounddevice input device index (None = system default)")
    chunk_seconds: float = Field(default=1.0, gt=0.0, description="Seconds of audio batched into one outbound frame")
    connect_timeout_s: float = Field(default=10.0, gt=0.0, description="Timeout for opening the WebSocket")
    heartbeat_interval_s: float = Field(default=30.0, gt=0.0, description="Interval between liveness frames")
    max_messages_per_minute: int = Field(default=100, ge=1, description="Outbound message cap per 60 s window")
    log_level: str = Field(default="INFO", description="Logging level")


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    return int(value)


def load_config(config_path: Optional[Path] = None) -> CoachClientConfig:
    if config_path is None:
        config_path = Path(".env")

    if config_path.exists():
        load_dotenv(config_path)
        logger.info(f"Loaded environment variables from {config_path}")
    else:
        logger.warning(f"Config file {config_path} not found, using environment variables only")

    api_key = os.getenv("GEMINI_API_KEY", "")
    if not api_key:
        raise ValueError("GEMINI_API_KEY is required but not set")

    try:
        return CoachClientConfig(
            gemini_api_key=api_key,
            model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash-exp"),
            service_host=os.getenv("GEMINI_HOST", "generativelanguage.googleapis.com"),
            api_version=os.getenv("GEMINI_API_VERSION", "v1beta"),
            system_instruction=os.getenv("SYSTEM_INSTRUCTION", DEFAULT_SYSTEM_INSTRUCTION),
            temperature=float(os.getenv("TEMPERATURE", "0.7")),
            sample_rate=int(os.getenv("SAMPLE_RATE", "44100")),
            channel_count=int(os.getenv("CHANNEL_COUNT", "1")),
            buffer_size=int(os.getenv("BUFFER_SIZE", "4096")),
            input_device=_optional_int(os.getenv("INPUT_DEVICE")),
            chunk_seconds=float(os.getenv("CHUNK_SECONDS", "1.0")),
            connect_timeout_s=float(os.getenv("CONNECT_TIMEOUT_S", "10")),
            heartbeat_interval_s=float(os.getenv("HEARTBEAT_INTERVAL_S", "30")),
            max_messages_per_minute=int(os.getenv("MAX_MESSAGES_PER_MINUTE", "100")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise


def create_example_env_file(path: Path = Path(".env.example")):
    example_content = """# Gemini API key - Get from https://aistudio.google.com/
GEMINI_API_KEY=your_api_key_here

# Streaming session
GEMINI_MODEL=gemini-2.0-flash-exp
GEMINI_HOST=generativelanguage.googleapis.com
GEMINI_API_VERSION=v1beta
TEMPERATURE=0.7

# Audio capture
SAMPLE_RATE=44100
CHANNEL_COUNT=1
BUFFER_SIZE=4096
# INPUT_DEVICE=0
CHUNK_SECONDS=1.0

# Connection tuning
CONNECT_TIMEOUT_S=10
HEARTBEAT_INTERVAL_S=30
MAX_MESSAGES_PER_MINUTE=100

# Logging level
LOG_LEVEL=INFO
"""

    with open(path, "w") as f:
        f.write(example_content)

    logger.info(f"Created example environment file at {path}")


def setup_logging(log_level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
