"""
Tunnel engine boundary.

The engine moves packets between the TUN descriptor and the local SOCKS5
endpoint. It is consumed through three calls only: start, stop and stats.
NativeTunnelEngine binds them to the hev-socks5-tunnel shared library.
"""

import ctypes
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Optional, Tuple

from .exceptions import EngineStartFailed, EngineUnavailable

logger = logging.getLogger(__name__)

# (tx_packets, tx_bytes, rx_packets, rx_bytes)
EngineCounters = Tuple[int, int, int, int]

# The engine returns from main only on quit or on a startup error
STARTUP_GRACE = 0.2


class TunnelEngine(ABC):
    """Opaque packet engine bound to an interface descriptor."""

    @abstractmethod
    def start(self, config_path: str, fd: int) -> None:
        """
        Start forwarding packets.

        Raises:
            EngineStartFailed: The engine rejected the descriptor or config
        """
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop forwarding. Safe to call when not started."""
        pass

    @abstractmethod
    def stats(self) -> Optional[EngineCounters]:
        """Cumulative counters, or None if unavailable."""
        pass


class NativeTunnelEngine(TunnelEngine):
    """
    hev-socks5-tunnel loaded through ctypes.

    hev_socks5_tunnel_main_from_file() blocks for the life of the tunnel, so
    it runs on its own daemon thread; hev_socks5_tunnel_quit() makes it
    return.
    """

    def __init__(self, library_path: str, join_timeout: float = 2.0):
        self.library_path = library_path
        self.join_timeout = join_timeout
        self._lib: Optional[ctypes.CDLL] = None
        self._thread: Optional[threading.Thread] = None
        self._exit_code: Optional[int] = None
        self._lock = threading.Lock()

    def _load(self) -> ctypes.CDLL:
        if self._lib is not None:
            return self._lib
        if not os.path.exists(self.library_path):
            raise EngineUnavailable(self.library_path, "file not found")
        try:
            lib = ctypes.CDLL(self.library_path)
        except OSError as e:
            raise EngineUnavailable(self.library_path, str(e))

        try:
            lib.hev_socks5_tunnel_main_from_file.argtypes = [ctypes.c_char_p, ctypes.c_int]
            lib.hev_socks5_tunnel_main_from_file.restype = ctypes.c_int
            lib.hev_socks5_tunnel_quit.argtypes = []
            lib.hev_socks5_tunnel_quit.restype = None
            size_p = ctypes.POINTER(ctypes.c_size_t)
            lib.hev_socks5_tunnel_stats.argtypes = [size_p, size_p, size_p, size_p]
            lib.hev_socks5_tunnel_stats.restype = None
        except AttributeError as e:
            raise EngineUnavailable(self.library_path, f"missing symbol ({e})")

        self._lib = lib
        logger.debug(f"[ENGINE] Loaded {self.library_path}")
        return lib

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, config_path: str, fd: int) -> None:
        if fd < 0:
            raise EngineStartFailed("invalid interface descriptor", fd=fd)

        with self._lock:
            if self.is_running():
                raise EngineStartFailed("engine already running", fd=fd)
            lib = self._load()
            self._exit_code = None
            done = threading.Event()

            def _main() -> None:
                try:
                    self._exit_code = lib.hev_socks5_tunnel_main_from_file(
                        config_path.encode(), fd
                    )
                finally:
                    done.set()
                if self._exit_code:
                    logger.error(f"[ENGINE] Exited with code {self._exit_code}")
                else:
                    logger.info("[ENGINE] Exited")

            self._thread = threading.Thread(target=_main, name="tunnel-engine", daemon=True)
            self._thread.start()

        if done.wait(STARTUP_GRACE):
            self._thread = None
            raise EngineStartFailed(
                f"engine returned {self._exit_code} for {config_path}", fd=fd
            )
        logger.info(f"[ENGINE] Started on fd {fd} with {config_path}")

    def stop(self) -> None:
        with self._lock:
            thread, self._thread = self._thread, None
            if thread is None or self._lib is None:
                return
            self._lib.hev_socks5_tunnel_quit()

        thread.join(timeout=self.join_timeout)
        if thread.is_alive():
            logger.warning(f"[ENGINE] Did not exit within {self.join_timeout}s")
        else:
            logger.info("[ENGINE] Stopped")

    def stats(self) -> Optional[EngineCounters]:
        if self._lib is None or not self.is_running():
            return None
        tx_packets = ctypes.c_size_t(0)
        tx_bytes = ctypes.c_size_t(0)
        rx_packets = ctypes.c_size_t(0)
        rx_bytes = ctypes.c_size_t(0)
        self._lib.hev_socks5_tunnel_stats(
            ctypes.byref(tx_packets), ctypes.byref(tx_bytes),
            ctypes.byref(rx_packets), ctypes.byref(rx_bytes),
        )
        return (tx_packets.value, tx_bytes.value, rx_packets.value, rx_bytes.value)
