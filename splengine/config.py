import os
from dataclasses import dataclass
from typing import Optional

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
READER_JOIN_TIMEOUT = 2.0

# ========= Timing policies =========
# Loopback and LAN sockets settle quickly.
TCP_IDLE_TIMEOUT = 0.05
TCP_DEBOUNCE_COUNT = 5
# A process behind an SSH session sees more jitter between bursts.
SSH_IDLE_TIMEOUT = 0.05
SSH_DEBOUNCE_COUNT = 3

MIN_IDLE_TIMEOUT = 0.001
MAX_IDLE_TIMEOUT = 60.0
MIN_DEBOUNCE_COUNT = 1
MAX_DEBOUNCE_COUNT = 1000

LOG_PREFIX = "[splengine]"


@dataclass(frozen=True)
class TimingPolicy:
    idle_timeout: float
    debounce_count: int = 1

    def __post_init__(self):
        if self.idle_timeout <= 0:
            raise ValueError(f"idle_timeout must be positive, got {self.idle_timeout}")
        if self.debounce_count < 1:
            raise ValueError(f"debounce_count must be >= 1, got {self.debounce_count}")

    @property
    def max_latency(self) -> float:
        return self.idle_timeout * self.debounce_count


TCP_TIMING = TimingPolicy(TCP_IDLE_TIMEOUT, TCP_DEBOUNCE_COUNT)
SSH_TIMING = TimingPolicy(SSH_IDLE_TIMEOUT, SSH_DEBOUNCE_COUNT)


# ========= Runtime Configuration =========
class EngineConfig:
    def __init__(self):
        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.IDLE_TIMEOUT: Optional[float] = None
        self.DEBOUNCE_COUNT: Optional[int] = None
        self.TRANSCRIPT_PATH: Optional[str] = None
        self.VERBOSE: bool = False

    def load_from_env(self):
        from splengine.utils import clamp, to_bool

        self.SSH_HOST = os.environ.get("SSH_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("SSH_USER", self.SSH_USER)
        self.SSH_PASSWORD = os.environ.get("SSH_PASSWORD", self.SSH_PASSWORD)
        self.SSH_PORT = clamp(os.environ.get("SSH_PORT", self.SSH_PORT), 22, 1, 65535, kind=int)
        self.SSH_KEY_PATH = os.environ.get("SSH_KEY_PATH", self.SSH_KEY_PATH)
        self.SSH_KEY_PASSPHRASE = os.environ.get("SSH_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)
        self.SSH_VERIFY_HOST_KEY = to_bool(os.environ.get("SSH_VERIFY_HOST_KEY"), self.SSH_VERIFY_HOST_KEY)

        idle_env = os.environ.get("SPLENGINE_IDLE_TIMEOUT")
        if idle_env:
            self.IDLE_TIMEOUT = clamp(idle_env, TCP_IDLE_TIMEOUT, MIN_IDLE_TIMEOUT, MAX_IDLE_TIMEOUT)
        debounce_env = os.environ.get("SPLENGINE_DEBOUNCE")
        if debounce_env:
            self.DEBOUNCE_COUNT = clamp(debounce_env, 1, MIN_DEBOUNCE_COUNT, MAX_DEBOUNCE_COUNT, kind=int)

        self.TRANSCRIPT_PATH = os.environ.get("SPLENGINE_TRANSCRIPT", self.TRANSCRIPT_PATH)
        self.VERBOSE = to_bool(os.environ.get("SPLENGINE_VERBOSE"), self.VERBOSE)

    def timing_for(self, default: TimingPolicy) -> TimingPolicy:
        """Apply any user overrides on top of a transport's default policy."""
        if self.IDLE_TIMEOUT is None and self.DEBOUNCE_COUNT is None:
            return default
        return TimingPolicy(
            idle_timeout=self.IDLE_TIMEOUT if self.IDLE_TIMEOUT is not None else default.idle_timeout,
            debounce_count=self.DEBOUNCE_COUNT if self.DEBOUNCE_COUNT is not None else default.debounce_count,
        )


# Global instance
config = EngineConfig()
