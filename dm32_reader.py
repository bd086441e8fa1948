#!/usr/bin/env python3
"""
dm32_reader.py — Baofeng DM-32 Codeplug Reader
================================================

KingAi Pty Ltd
https://github.com/KingAiCodeForge

Reads the codeplug memory of a Baofeng DM-32 DMR handheld over its CH340
programming cable and recovers the channel list from the raw image.

Nobody publishes the DM-32 memory map. The OEM CPS talks a small framed
protocol (PSEARCH/PASSSTA/SYSINFO, V/G probes, PROGRAM, R/W blocks) that was
recovered from USB captures, and the channel records inside the image have
no fixed offsets: labels are followed by a variable amount of padding and
then a binary record whose start has to be found by scoring byte patterns.
This tool does both halves: the wire protocol, and the scored record search.

Target Hardware:
    Radio:  Baofeng DM-32 (dual band DMR / FM)
    Cable:  CH340 USB-serial, 115200 baud 8N1
    Image:  2 MiB address space, partially populated by region reads

Architecture:
    Single-file script with PySide6 GUI + full CLI backend.
    Virtual radio transport for offline testing with saved images.
    Channel slots at 0x00601C, 48-byte stride, 240 slot window.

Status:
    READ ONLY — no upload path exists and none is planned until the
    parameter block is understood. The channel decoder is a best-effort
    heuristic, not a verified format decoder.

Requires: Python 3.10+, pyserial, rich
Optional: PySide6 (GUI), ftd2xx (D2XX transport)

MIT License

Copyright (c) 2026 Jason King (pcmhacking.net: kingaustraliagg)

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
"""




# ═══════════════════════════════════════════════════════════════════════
# SECTION 0 — IMPORTS & GLOBALS
# ═══════════════════════════════════════════════════════════════════════

from __future__ import annotations

import sys
import csv
import time
import json
import struct
import logging
import argparse
import threading
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, field
from enum import IntEnum, Enum, auto
from typing import Optional, Callable, List, Tuple, Dict, Any, Iterable, Sequence

import serial
import serial.tools.list_ports
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

# FTDI D2XX — optional
try:
    import ftd2xx
    D2XX_AVAILABLE = True
except ImportError:
    D2XX_AVAILABLE = False

# GUI — PySide6 (optional, CLI works without it)
GUI_AVAILABLE = False
_GUI_IMPORT_ERROR: str = ""
try:
    from PySide6.QtWidgets import (
        QApplication, QMainWindow, QWidget, QVBoxLayout, QHBoxLayout,
        QFormLayout, QLabel, QPushButton, QComboBox, QProgressBar,
        QTextEdit, QFileDialog, QTabWidget, QGroupBox, QSpinBox,
        QTableWidget, QTableWidgetItem, QStatusBar, QMessageBox,
        QHeaderView, QAbstractItemView,
    )
    from PySide6.QtCore import Qt, Signal, Slot, QThread, QObject
    from PySide6.QtGui import QColor, QFont, QAction
    GUI_AVAILABLE = True
except Exception as _e:
    _GUI_IMPORT_ERROR = f"{type(_e).__name__}: {_e}"

# ── Version & Metadata ──
__version__ = "0.1.0"
__app_name__ = "DM-32 Codeplug Reader"
__target_radio__ = "Baofeng DM-32 (experimental)"

# ── Logging Setup ──
LOG_DIR = Path(__file__).resolve().parent / "logs"
LOG_DIR.mkdir(parents=True, exist_ok=True)


def setup_logging(
    name: str = "dm32",
    level: int = logging.DEBUG,
    console_level: int = logging.WARNING,
    log_dir: Optional[Path] = None,
    rich_console: bool = True,
) -> logging.Logger:
    """
    Configure and return a logger.

    Args:
        name:          Logger name and log-file prefix.
        level:         Root level (DEBUG captures every TX/RX hex dump to file).
        console_level: Level for console/terminal output (WARNING+ by
                       default so progress output isn't buried).
        log_dir:       Override log directory (default: logs/ next to this file).
        rich_console:  Use the Rich handler for the console, else a plain
                       stderr stream handler.

    Returns:
        Configured ``logging.Logger`` instance.

    Log files: ``<log_dir>/<name>_YYYYMMDD_HHMMSS.log``
    """
    log_dir = log_dir or LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(level)

    # ── File handler: captures everything (DEBUG+) ──
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"{name}_{ts}.log"
    file_fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(name)s | %(funcName)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(file_fmt)
    logger.addHandler(fh)

    # ── Console handler ──
    if rich_console:
        ch = RichHandler(
            level=console_level,
            show_time=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )
    else:
        ch = logging.StreamHandler(sys.stderr)
        ch.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S",
        ))
    ch.setLevel(console_level)
    logger.addHandler(ch)

    logger.info("=" * 60)
    logger.info("Logger initialized: %s", name)
    logger.info("Log file: %s", log_file)
    logger.info("Console level: %s", logging.getLevelName(console_level))
    logger.info("=" * 60)

    return logger

log = setup_logging()


def hex_dump(data: bytes, limit: int = 64) -> str:
    """Space-separated hex, truncated for log lines."""
    text = bytes(data[:limit]).hex(" ").upper()
    if len(data) > limit:
        text += f" ... (+{len(data) - limit})"
    return text


# ═══════════════════════════════════════════════════════════════════════
# SECTION 1 — CONSTANTS & PROTOCOL DEFINITIONS
# ═══════════════════════════════════════════════════════════════════════

# Advertised capacities (Baofeng DM-32 spec sheet / OEM CPS)
DM32_NCHAN = 4000
DM32_NCONTACTS = 50000
DM32_NZONES = 250
DM32_NGLISTS = 32
DM32_NSCANLISTS = 32
DM32_NMESSAGES = 20

# Image characteristics
DM32_MEMSZ = 0x200000          # 2 MiB bound used by the reader
DM32_MAX_ADDRESS = 0xFFFFFF    # 24-bit wire address
DM32_MAX_LENGTH = 0xFFFF       # 16-bit wire length
DM32_BAUD = 115200

# Channel slot window (observed)
CHAN_BASE = 0x00601C           # first slot label address
CHAN_STRIDE = 0x30             # 48 bytes per slot
CHAN_WINDOW = 240              # ~11.5 KiB, covers reads at 0x600C/0x7001/0x8000
CHAN_SCAN_LIMIT = 0x010000     # slots never live above this

# Label → pad → signature seeking
LABEL_MAX = 31                 # printable label bytes before the NUL
LABEL_PAD_MAX = 16             # 0x00/0xFF filler skipped after the NUL
SIG_SCAN_MAX = 32              # positions scanned for the record start
SIG_NUDGE_MAX = 3              # sub-alignments tested per position (0..3)
SIG_MIN_SPAN = 12              # bytes a candidate start needs below the limit

# Parameter block relative to signature start
PARAMS_OFS = 8
PARAMS_LEN = 16
SLOT_RECORD_LEN = PARAMS_OFS + PARAMS_LEN   # 24 bytes must be populated

# Parameter byte indices
PARAM_IDX_KIND_TSCC = 4        # digital timeslot / colour code byte
PARAM_IDX_POWER = 5            # power flag byte (digital + analog)
PARAM_IDX_MON = 7              # monitor flag byte
LEGACY_IDX_POWER = 0           # pre-pattern indices, kept for unknown kinds
LEGACY_IDX_TSCC = 5

# Bit masks within parameters
POWER_HIGH_BIT = 0x04
TS2_BIT = 0x10
CC_MASK = 0x0F
MONITOR_BIT = 0x01

FILLER_BYTES = (0x00, 0xFF)


class Opcode(IntEnum):
    """DM-32 programming protocol opcodes (first byte of a frame)."""
    VERSION = 0x56       # 'V'
    RESOURCE = 0x47      # 'G'
    READ = 0x52          # 'R'
    READ_REPLY = 0x57    # 'W'
    STX = 0x02
    ACK = 0x06


# ASCII discovery strings, sent raw with no terminator
DISCOVERY_STRINGS = (b"PSEARCH", b"PASSSTA", b"SYSINFO")

# Version/info probes (CPS-like). Variant 0x0C never appears in captures.
VERSION_PROBE = bytes([Opcode.VERSION, 0x00, 0x00, 0x40, 0x0D])
VERSION_VARIANTS = tuple(i for i in range(1, 17) if i != 12)

# Resource fetch, response ignored
RESOURCE_PROBE = bytes([Opcode.RESOURCE, 0x00, 0x00, 0x00, 0x00, 0x01])

# Program mode: 4 x 0xFF lead-in, length byte, "PROGRAM"
PROGRAM_PREAMBLE = b"\xFF\xFF\xFF\xFF\x0C" + b"PROGRAM"

READ_REQUEST_LEN = 6
READ_HEADER_LEN = 6

# Default drain windows (ms)
PULSE_SETTLE_MS = 150
DISCOVERY_DRAIN_MS = 150
VERSION_DRAIN_MS = 100
VARIANT_DRAIN_MS = 90
RESOURCE_DRAIN_MS = 200
PROGRAM_PAUSE_MS = 30
STX_DRAIN_MS = 80
ACK_DRAIN_MS = 120
PROBE_DRAIN_MS = 50
DRAIN_SLICE_MS = 50
DRAIN_BUFFER = 512

# Block read timing
HEADER_SYNC_BUDGET_MS = 4000
HEADER_BYTE_TIMEOUT_MS = 150
HEADER_EMPTY_COST_MS = 200
HEADER_TAIL_TIMEOUT_MS = 5000
HEADER_DISCARD_MAX = 100000    # tolerates long SYSINFO / 0x56 bursts
PAYLOAD_CHUNK = 512
PAYLOAD_TIMEOUT_MS = 2000
DEFAULT_READ_ATTEMPTS = 2
RETRY_BACKOFF_MS = 50

# Diagnostic probe read issued before the region table
PROBE_ADDRESS = 0x008027
PROBE_LENGTH = 4


@dataclass(frozen=True)
class Region:
    """One window of the image to fetch: 24-bit address, 16-bit length."""
    address: int
    length: int

    @property
    def end(self) -> int:
        return self.address + self.length

    def __str__(self) -> str:
        return f"0x{self.address:06X}+{self.length}"


# Addresses observed in CPS captures. Zone names sit below 0x2000, channel
# labels in 0x6000-0x8FFF, contacts from 0x10000, roaming at 0x20000.
DEFAULT_REGION_MAP: Tuple[Region, ...] = (
    Region(0x000000, 0x1000),
    Region(0x001000, 0x1000),
    Region(0x002000, 0x1000),
    Region(0x00600C, 0x0FF4),
    Region(0x007001, 0x0FFF),
    Region(0x008000, 0x1000),
    Region(0x009000, 0x1000),
    Region(0x010000, 0x1000),
    Region(0x020000, 0x1000),
)


def load_region_map(path: str, capacity: int = DM32_MEMSZ) -> List[Region]:
    """
    Load a region table from JSON.

    Accepts a list of ``[address, length]`` pairs or ``{"address": ..,
    "length": ..}`` objects; numbers may be ints or hex strings ("0x600C").
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Region map not found: {path}")
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {path}: {e}")
    if not isinstance(raw, list) or not raw:
        raise ValueError(f"Region map {path} must be a non-empty list")

    def as_int(value: Any) -> int:
        if isinstance(value, str):
            return int(value, 0)
        return int(value)

    regions = []
    for i, entry in enumerate(raw):
        try:
            if isinstance(entry, dict):
                address, length = as_int(entry["address"]), as_int(entry["length"])
            else:
                address, length = as_int(entry[0]), as_int(entry[1])
        except (KeyError, IndexError, TypeError) as e:
            raise ValueError(f"Region {i}: expected [address, length] or "
                             f"{{\"address\", \"length\"}}, got {entry!r} ({e})")
        if not 0 <= address <= DM32_MAX_ADDRESS:
            raise ValueError(f"Region {i}: address 0x{address:X} is not 24-bit")
        if not 0 < length <= DM32_MAX_LENGTH:
            raise ValueError(f"Region {i}: length {length} is not 16-bit")
        if address + length > capacity:
            raise ValueError(f"Region {i}: 0x{address:06X}+{length} exceeds image capacity")
        regions.append(Region(address, length))
    log.info("Loaded %d regions from %s", len(regions), path)
    return regions


# ═══════════════════════════════════════════════════════════════════════
# SECTION 2 — FREQUENCY DECODING
# ═══════════════════════════════════════════════════════════════════════

class FrequencyDecoder:
    """
    4-byte frequency words.

    The DM-32 stores frequencies as 8 BCD digits in 10 Hz units, normally
    least-significant byte first (0x44358750 on the wire as 50 87 35 44 is
    443.58750 MHz). Some slots decode cleanly only with the bytes taken in
    forward order, so both readings are tried and the one that looks more
    like an amateur channel wins.
    """

    PLAUSIBLE_MIN_MHZ = 30.0
    PLAUSIBLE_MAX_MHZ = 1000.0
    RAW_MAX_MHZ = 2000.0
    COMMON_BANDS_MHZ = (144.0, 145.0, 146.0, 430.0, 433.0, 435.0, 438.0, 439.0, 440.0)
    BAND_WINDOW_MHZ = 2.0
    CHANNEL_STEP_MHZ = 0.0125
    STEP_TOLERANCE = 0.02
    STEP_BONUS = 0.5

    @staticmethod
    def _bcd_value(digits_hex: str) -> float:
        if not digits_hex.isdigit():
            return 0.0
        return int(digits_hex) / 100000.0

    @staticmethod
    def bcd_mhz(word: bytes) -> float:
        """BCD, most-significant byte last (word[3] holds the leading digits)."""
        return FrequencyDecoder._bcd_value(bytes(reversed(bytes(word[:4]))).hex())

    @staticmethod
    def bcd_mhz_alt(word: bytes) -> float:
        """BCD with the bytes taken in forward order."""
        v = FrequencyDecoder._bcd_value(bytes(word[:4]).hex())
        if v < 0.0 or v > FrequencyDecoder.RAW_MAX_MHZ:
            return 0.0
        return v

    @staticmethod
    def f32_mhz(word: bytes) -> float:
        """Little-endian IEEE float32, 0.0 when outside 0..2000 (or NaN)."""
        v = struct.unpack("<f", bytes(word[:4]))[0]
        if not (0.0 <= v <= FrequencyDecoder.RAW_MAX_MHZ):
            return 0.0
        return v

    @staticmethod
    def is_plausible(mhz: float) -> bool:
        return FrequencyDecoder.PLAUSIBLE_MIN_MHZ <= mhz <= FrequencyDecoder.PLAUSIBLE_MAX_MHZ

    @staticmethod
    def band_score(mhz: float) -> float:
        """Closeness to a common amateur frequency plus 12.5 kHz step alignment."""
        best = 0.0
        for band in FrequencyDecoder.COMMON_BANDS_MHZ:
            d = abs(mhz - band)
            s = FrequencyDecoder.BAND_WINDOW_MHZ - d if d < FrequencyDecoder.BAND_WINDOW_MHZ else 0.0
            if s > best:
                best = s
        steps = mhz / FrequencyDecoder.CHANNEL_STEP_MHZ
        nearest = int(steps + (0.5 if steps >= 0 else -0.5))
        if abs(steps - nearest) < FrequencyDecoder.STEP_TOLERANCE:
            best += FrequencyDecoder.STEP_BONUS
        return best

    @staticmethod
    def decode(word: bytes, rx_hint: float = 0.0) -> float:
        """
        Pick between the two BCD readings of a word.

        One plausible reading wins outright; two are split by band score
        (ties keep the primary reading). With neither plausible, a
        plausible ``rx_hint`` is returned (simplex), else 0.0.
        """
        v1 = FrequencyDecoder.bcd_mhz(word)
        v2 = FrequencyDecoder.bcd_mhz_alt(word)
        ok1 = FrequencyDecoder.is_plausible(v1)
        ok2 = FrequencyDecoder.is_plausible(v2)
        if ok1 and not ok2:
            return v1
        if ok2 and not ok1:
            return v2
        if ok1 and ok2:
            s1 = FrequencyDecoder.band_score(v1)
            s2 = FrequencyDecoder.band_score(v2)
            return v2 if s2 > s1 else v1
        if FrequencyDecoder.is_plausible(rx_hint):
            return rx_hint
        return 0.0

    @staticmethod
    def encode_bcd(mhz: float) -> bytes:
        """Inverse of ``bcd_mhz``: 8 digits at 10 Hz, least-significant byte first."""
        units = int(round(mhz * 100000))
        if not 0 <= units <= 99999999:
            raise ValueError(f"{mhz} MHz does not fit 8 BCD digits")
        return bytes(reversed(bytes.fromhex(f"{units:08d}")))


# ═══════════════════════════════════════════════════════════════════════
# SECTION 3 — MEMORY IMAGE
# ═══════════════════════════════════════════════════════════════════════

class ImageBoundsError(ValueError):
    """Raised on a write past capacity or a read past the high-water mark."""


class MemoryImage:
    """
    Owned copy of the radio's 2 MiB address space.

    ``written_max`` is the highest address confirmed populated; it only
    ever grows. Everything at or above it is unknown and ``view`` refuses
    to hand it out.
    """

    def __init__(self, capacity: int = DM32_MEMSZ):
        self.capacity = capacity
        self._data = bytearray(capacity)
        self._written_max = 0

    @property
    def written_max(self) -> int:
        return self._written_max

    def fits(self, address: int, length: int) -> bool:
        """True if [address, address+length) lies inside the capacity."""
        return address >= 0 and length >= 0 and address + length <= self.capacity

    def covers(self, address: int, length: int) -> bool:
        """True if [address, address+length) lies below ``written_max``."""
        return address >= 0 and length >= 0 and address + length <= self._written_max

    def write(self, address: int, data: bytes) -> int:
        """Store bytes and advance the high-water mark. Returns ``written_max``."""
        if not self.fits(address, len(data)):
            raise ImageBoundsError(
                f"write 0x{address:06X}+{len(data)} exceeds capacity 0x{self.capacity:06X}")
        self._data[address:address + len(data)] = data
        if address + len(data) > self._written_max:
            self._written_max = address + len(data)
        return self._written_max

    def view(self, address: int, length: int) -> bytes:
        if not self.covers(address, length):
            raise ImageBoundsError(
                f"read 0x{address:06X}+{length} beyond written_max 0x{self._written_max:06X}")
        return bytes(self._data[address:address + length])

    def readable(self) -> memoryview:
        """Read-only view of the populated prefix, for scanners."""
        return memoryview(self._data)[:self._written_max].toreadonly()

    def populated(self) -> bytes:
        return bytes(self._data[:self._written_max])

    def save(self, path: str) -> int:
        """Write the populated prefix verbatim (at least one byte). Returns bytes written."""
        n = max(self._written_max, 1)
        Path(path).write_bytes(bytes(self._data[:n]))
        log.info("Saved %d byte image to %s", n, path)
        return n

    @classmethod
    def load(cls, path: str, capacity: int = DM32_MEMSZ) -> "MemoryImage":
        """Rebuild an image from a saved file; its length becomes ``written_max``."""
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"Image file not found: {path}")
        data = p.read_bytes()
        if len(data) > capacity:
            raise ValueError(f"Image {path} is {len(data)} bytes, capacity is {capacity}")
        image = cls(capacity)
        image.write(0, data)
        log.info("Loaded %d byte image from %s", len(data), path)
        return image


# ═══════════════════════════════════════════════════════════════════════
# SECTION 4 — TRANSPORT LAYER (Serial / D2XX / Virtual Radio)
# ═══════════════════════════════════════════════════════════════════════

class TransportError(Exception):
    """Raised when transport fails."""

class BaseTransport:
    """
    Abstract base for all serial transports.

    ``read`` returns 0..count bytes and may return short or empty on
    timeout. Nothing above this layer assumes one read is one frame.
    """

    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def write(self, data: bytes) -> int:
        raise NotImplementedError

    def read(self, count: int, timeout_ms: int = 2000) -> bytes:
        raise NotImplementedError

    def flush_input(self) -> None:
        raise NotImplementedError

    def flush_output(self) -> None:
        raise NotImplementedError

    def pulse_control_lines(self) -> None:
        """Toggle RTS/DTR so the CH340 bridge wakes the radio's UART."""
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    @property
    def bytes_available(self) -> int:
        raise NotImplementedError


class PySerialTransport(BaseTransport):
    """PySerial (COM port / CH340 VCP) transport."""

    PULSE_LOW_S = 0.05

    def __init__(self, port: str, baud: int = DM32_BAUD):
        self.port = port
        self.baud = baud
        self._serial: Optional[serial.Serial] = None

    def open(self) -> None:
        try:
            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=0.1,
                write_timeout=1.0,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
            )
            log.info("Opened %s at %d baud", self.port, self.baud)
        except serial.SerialException as e:
            raise TransportError(f"Failed to open {self.port}: {e}")

    def close(self) -> None:
        if self._serial and self._serial.is_open:
            self._serial.close()
            log.info("Closed %s", self.port)

    def write(self, data: bytes) -> int:
        if not self._serial or not self._serial.is_open:
            raise TransportError("Port not open")
        try:
            return self._serial.write(data)
        except serial.SerialException as e:
            raise TransportError(f"Write failed on {self.port}: {e}")

    def read(self, count: int, timeout_ms: int = 2000) -> bytes:
        if not self._serial or not self._serial.is_open:
            raise TransportError("Port not open")
        try:
            self._serial.timeout = timeout_ms / 1000.0
            return bytes(self._serial.read(count))
        except serial.SerialException as e:
            raise TransportError(f"Read failed on {self.port}: {e}")

    def flush_input(self) -> None:
        if self._serial and self._serial.is_open:
            self._serial.reset_input_buffer()

    def flush_output(self) -> None:
        if self._serial and self._serial.is_open:
            self._serial.reset_output_buffer()

    def pulse_control_lines(self) -> None:
        if not self._serial or not self._serial.is_open:
            raise TransportError("Port not open")
        self._serial.rts = False
        self._serial.dtr = False
        time.sleep(self.PULSE_LOW_S)
        self._serial.rts = True
        self._serial.dtr = True
        log.debug("Pulsed RTS/DTR on %s", self.port)

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    @property
    def bytes_available(self) -> int:
        if self._serial and self._serial.is_open:
            return self._serial.in_waiting
        return 0

    @staticmethod
    def list_ports() -> List[str]:
        """List available serial ports."""
        return [p.device for p in serial.tools.list_ports.comports()]


class D2XXTransport(BaseTransport):
    """FTDI D2XX direct USB transport, for FTDI-based programming leads."""

    def __init__(self, device_index: int = 0, baud: int = DM32_BAUD):
        self.device_index = device_index
        self.baud = baud
        self._device = None

    def open(self) -> None:
        if not D2XX_AVAILABLE:
            raise TransportError("ftd2xx not installed — pip install ftd2xx")
        try:
            self._device = ftd2xx.open(self.device_index)
            self._device.setBaudRate(self.baud)
            self._device.setDataCharacteristics(
                ftd2xx.defines.BITS_8,
                ftd2xx.defines.STOP_BITS_1,
                ftd2xx.defines.PARITY_NONE,
            )
            self._device.setTimeouts(200, 200)
            self._device.setLatencyTimer(2)
            self._device.purge(ftd2xx.defines.PURGE_RX | ftd2xx.defines.PURGE_TX)
            log.info("Opened FTDI D2XX device %d at %d baud", self.device_index, self.baud)
        except ftd2xx.DeviceError as e:
            raise TransportError(f"Failed to open D2XX device {self.device_index}: {e}")

    def close(self) -> None:
        if self._device:
            try:
                self._device.close()
            except ftd2xx.DeviceError as e:
                log.warning("D2XX close failed: %s", e)
            self._device = None

    def write(self, data: bytes) -> int:
        if not self._device:
            raise TransportError("D2XX device not open")
        return self._device.write(bytes(data))

    def read(self, count: int, timeout_ms: int = 2000) -> bytes:
        if not self._device:
            raise TransportError("D2XX device not open")
        self._device.setTimeouts(timeout_ms, timeout_ms)
        return bytes(self._device.read(count))

    def flush_input(self) -> None:
        if self._device:
            self._device.purge(ftd2xx.defines.PURGE_RX)

    def flush_output(self) -> None:
        if self._device:
            self._device.purge(ftd2xx.defines.PURGE_TX)

    def pulse_control_lines(self) -> None:
        if not self._device:
            raise TransportError("D2XX device not open")
        self._device.clrRts()
        self._device.clrDtr()
        time.sleep(PySerialTransport.PULSE_LOW_S)
        self._device.setRts()
        self._device.setDtr()

    @property
    def is_open(self) -> bool:
        return self._device is not None

    @property
    def bytes_available(self) -> int:
        if self._device:
            return self._device.getQueueStatus()
        return 0


class VirtualRadioTransport(BaseTransport):
    """
    In-memory DM-32 for testing without hardware.

    Answers the discovery/probe/program-mode traffic with canned bytes and
    serves ``R`` block reads from a simulated 2 MiB memory (0xFF where
    nothing was loaded). If *image_path* is given the memory is preloaded
    from a saved ``.img`` so offline reads return realistic data.

    Fault injection for tests:
        leading_noise    bytes emitted before every ``W`` header
        stall_after      payload bytes delivered before a read goes silent
        corrupt_header   flip the echoed length byte
        drop_reads       number of upcoming ``R`` requests to ignore
        max_read         cap on bytes returned per ``read`` call
    """

    PSEARCH_REPLY = b"\x06DM-32UV"
    PASSSTA_REPLY = b"\x50\x00\x00"
    SYSINFO_REPLY = b"\x06"
    VERSION_REPLY = b"\x56\x00\x00\x40\x0DDM32.01.01.038"
    RESOURCE_REPLY = b"\x47\x00\x00\x00\x00\x01\x00"
    STX_REPLY = b"DM32\x00\x00\x00\x00"

    def __init__(self, image_path: Optional[str] = None, image: Optional[bytes] = None,
                 program_mode: bool = False, leading_noise: bytes = b"\x06",
                 stall_after: Optional[int] = None, corrupt_header: bool = False,
                 drop_reads: int = 0, max_read: Optional[int] = None):
        self._rx_buffer = bytearray()
        self._tx_log: List[bytes] = []
        self._opened = False
        self._image_path = image_path
        self.program_mode = program_mode
        self.leading_noise = leading_noise
        self.stall_after = stall_after
        self.corrupt_header = corrupt_header
        self.drop_reads = drop_reads
        self.max_read = max_read
        self.pulses = 0
        self.read_requests: List[Tuple[int, int]] = []

        self._memory = bytearray(b"\xFF" * DM32_MEMSZ)
        if image_path:
            raw = Path(image_path).read_bytes()
            image = raw
            log.info("Virtual radio loaded %d bytes from %s", len(raw), image_path)
        if image:
            if len(image) > DM32_MEMSZ:
                raise ValueError(f"Virtual radio image is {len(image)} bytes, max {DM32_MEMSZ}")
            self._memory[:len(image)] = image

    def open(self) -> None:
        self._opened = True
        label = f"Virtual DM-32 ({Path(self._image_path).name})" if self._image_path else "Virtual DM-32"
        log.info("%s transport opened (simulation mode)", label)

    def close(self) -> None:
        self._opened = False

    def write(self, data: bytes) -> int:
        if not self._opened:
            raise TransportError("Virtual radio not open")
        self._tx_log.append(bytes(data))
        self._simulate_response(bytes(data))
        return len(data)

    def read(self, count: int, timeout_ms: int = 2000) -> bytes:
        if not self._opened:
            raise TransportError("Virtual radio not open")
        n = count if self.max_read is None else min(count, self.max_read)
        result = bytes(self._rx_buffer[:n])
        del self._rx_buffer[:n]
        return result

    def flush_input(self) -> None:
        self._rx_buffer.clear()

    def flush_output(self) -> None:
        pass

    def pulse_control_lines(self) -> None:
        self.pulses += 1

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def bytes_available(self) -> int:
        return len(self._rx_buffer)

    @property
    def tx_log(self) -> List[bytes]:
        return list(self._tx_log)

    def _simulate_response(self, data: bytes) -> None:
        """Generate simulated radio responses based on sent bytes."""
        if data == b"PSEARCH":
            self._rx_buffer.extend(self.PSEARCH_REPLY)
        elif data == b"PASSSTA":
            self._rx_buffer.extend(self.PASSSTA_REPLY)
        elif data == b"SYSINFO":
            self._rx_buffer.extend(self.SYSINFO_REPLY)
        elif data[:1] == bytes([Opcode.VERSION]) and len(data) == 5:
            if data == VERSION_PROBE:
                self._rx_buffer.extend(self.VERSION_REPLY)
            else:
                self._rx_buffer.extend(data[:4] + b"\x00")
        elif data == RESOURCE_PROBE:
            self._rx_buffer.extend(self.RESOURCE_REPLY)
        elif data == PROGRAM_PREAMBLE:
            self.program_mode = True
            self._rx_buffer.append(Opcode.ACK)
        elif data == bytes([Opcode.STX]):
            self._rx_buffer.extend(self.STX_REPLY)
        elif data == bytes([Opcode.ACK]):
            self._rx_buffer.append(Opcode.ACK)
        elif data[:1] == bytes([Opcode.READ]) and len(data) == READ_REQUEST_LEN:
            self._serve_read(data)

    def _serve_read(self, request: bytes) -> None:
        address = (request[1] << 16) | (request[2] << 8) | request[3]
        length = request[4] | (request[5] << 8)
        self.read_requests.append((address, length))
        if not self.program_mode:
            return
        if self.drop_reads > 0:
            self.drop_reads -= 1
            return
        header = bytearray([Opcode.READ_REPLY]) + request[1:]
        if self.corrupt_header:
            header[5] ^= 0xFF
        payload = self._memory[address:address + length]
        if self.stall_after is not None:
            payload = payload[:self.stall_after]
        self._rx_buffer.extend(self.leading_noise)
        self._rx_buffer.extend(header)
        self._rx_buffer.extend(payload)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 5 — RADIO LINK (events, drains, exact reads)
# ═══════════════════════════════════════════════════════════════════════

class LinkState(Enum):
    """Link state machine."""
    DISCONNECTED = auto()
    CONNECTED = auto()
    HANDSHAKE = auto()
    PROGRAM_MODE = auto()
    READING = auto()
    ERROR = auto()

@dataclass
class ReaderConfig:
    """Reader configuration. All times in milliseconds."""
    baud: int = DM32_BAUD
    capacity: int = DM32_MEMSZ
    # handshake
    pulse_settle_ms: int = PULSE_SETTLE_MS
    discovery_drain_ms: int = DISCOVERY_DRAIN_MS
    version_drain_ms: int = VERSION_DRAIN_MS
    variant_drain_ms: int = VARIANT_DRAIN_MS
    resource_drain_ms: int = RESOURCE_DRAIN_MS
    program_pause_ms: int = PROGRAM_PAUSE_MS
    stx_drain_ms: int = STX_DRAIN_MS
    ack_drain_ms: int = ACK_DRAIN_MS
    drain_slice_ms: int = DRAIN_SLICE_MS
    # block reads
    header_sync_budget_ms: int = HEADER_SYNC_BUDGET_MS
    header_byte_timeout_ms: int = HEADER_BYTE_TIMEOUT_MS
    header_empty_cost_ms: int = HEADER_EMPTY_COST_MS
    header_tail_timeout_ms: int = HEADER_TAIL_TIMEOUT_MS
    header_discard_max: int = HEADER_DISCARD_MAX
    payload_chunk: int = PAYLOAD_CHUNK
    payload_timeout_ms: int = PAYLOAD_TIMEOUT_MS
    read_attempts: int = DEFAULT_READ_ATTEMPTS
    retry_backoff_ms: int = RETRY_BACKOFF_MS
    probe_address: int = PROBE_ADDRESS
    probe_length: int = PROBE_LENGTH
    probe_drain_ms: int = PROBE_DRAIN_MS
    # slot window
    slot_base: int = CHAN_BASE
    slot_stride: int = CHAN_STRIDE
    slot_window: int = CHAN_WINDOW
    label_max: int = LABEL_MAX
    label_pad_max: int = LABEL_PAD_MAX
    sig_scan_max: int = SIG_SCAN_MAX


class RadioLink:
    """
    Byte-level link to the radio.

    Wraps a transport with the event system the CLI and GUI listen on,
    a cancel flag, and the two read primitives everything else is built
    from: ``drain`` (read and discard for a time window) and
    ``read_exact`` (keep reading until n bytes or a read comes back empty).
    Transport errors never escape this class; they are logged and turn
    into empty reads or failed sends.
    """

    def __init__(self, transport: BaseTransport, config: ReaderConfig = None):
        self.transport = transport
        self.config = config or ReaderConfig()
        self.state = LinkState.DISCONNECTED
        self._cancel = threading.Event()
        self._callbacks: Dict[str, List[Callable]] = {}

    # ── Event System ──

    def on(self, event: str, callback: Callable) -> None:
        """Register an event callback. Events: log, progress, state."""
        self._callbacks.setdefault(event, []).append(callback)

    def off(self, event: str, callback: Callable) -> None:
        """Remove a callback registered with ``on``. Unknown callbacks are ignored."""
        callbacks = self._callbacks.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def emit(self, event: str, **kwargs) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._callbacks.get(event, []):
            try:
                cb(**kwargs)
            except Exception as e:
                log.error("Event callback error: %s", e)

    def cancel(self) -> None:
        """Cancel the current operation (honoured between region reads)."""
        self._cancel.set()
        self.emit("log", msg="Operation cancelled by user", level="warning")

    def reset_cancel(self) -> None:
        self._cancel.clear()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def set_state(self, state: LinkState) -> None:
        if state != self.state:
            log.debug("Link state %s -> %s", self.state.name, state.name)
            self.state = state
            self.emit("state", state=state)

    # ── Connection ──

    def connect(self) -> bool:
        try:
            self.transport.open()
        except TransportError as e:
            log.error("Open failed: %s", e)
            self.emit("log", msg=f"Open failed: {e}", level="error")
            self.set_state(LinkState.ERROR)
            return False
        self.transport.flush_input()
        self.set_state(LinkState.CONNECTED)
        self.emit("log", msg="Port opened", level="info")
        return True

    def disconnect(self) -> None:
        try:
            self.transport.close()
        except TransportError as e:
            log.warning("Close failed: %s", e)
        self.set_state(LinkState.DISCONNECTED)

    # ── Byte I/O ──

    def send(self, data: bytes, label: str = "") -> bool:
        """Write raw bytes. Returns False (logged) on transport failure."""
        log.debug("TX %s[%d]: %s", f"{label} " if label else "", len(data), hex_dump(data))
        try:
            self.transport.write(data)
        except TransportError as e:
            log.error("TX failed%s: %s", f" ({label})" if label else "", e)
            return False
        return True

    def read_exact(self, count: int, timeout_ms: int) -> bytes:
        """
        Read until *count* bytes arrive or a read returns nothing.

        Each underlying read gets the full *timeout_ms*. Returns whatever
        was collected, possibly short.
        """
        got = bytearray()
        while len(got) < count:
            try:
                chunk = self.transport.read(count - len(got), timeout_ms=timeout_ms)
            except TransportError as e:
                log.error("RX failed: %s", e)
                break
            if not chunk:
                break
            got.extend(chunk)
        return bytes(got)

    def drain(self, msec: int, label: str = "") -> int:
        """Read and discard for about *msec* ms in fixed slices. Returns bytes seen."""
        slice_ms = max(1, self.config.drain_slice_ms)
        seen = bytearray()
        for _ in range(max(1, msec // slice_ms)):
            try:
                chunk = self.transport.read(DRAIN_BUFFER, timeout_ms=slice_ms)
            except TransportError as e:
                log.error("Drain failed%s: %s", f" ({label})" if label else "", e)
                break
            if chunk:
                seen.extend(chunk)
        if seen:
            log.debug("RX %s[%d]: %s", f"{label} " if label else "", len(seen), hex_dump(seen))
        return len(seen)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 6 — HANDSHAKE (CPS-style wake-up into program mode)
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class HandshakeStep:
    """One "send, then drain" step. ``pause_ms`` sleeps between the two."""
    label: str
    payload: bytes
    drain_ms: int
    pause_ms: int = 0


def build_handshake_steps(config: ReaderConfig) -> List[HandshakeStep]:
    """The fixed CPS wake-up sequence, in order."""
    steps = [HandshakeStep(s.decode("ascii"), s, config.discovery_drain_ms)
             for s in DISCOVERY_STRINGS]
    steps.append(HandshakeStep("version", VERSION_PROBE, config.version_drain_ms))
    for i in VERSION_VARIANTS:
        steps.append(HandshakeStep(f"version[{i}]", bytes([Opcode.VERSION, 0, 0, 0, i]),
                                   config.variant_drain_ms))
    steps.append(HandshakeStep("resource", RESOURCE_PROBE, config.resource_drain_ms))
    steps.append(HandshakeStep("PROGRAM", PROGRAM_PREAMBLE, 0, pause_ms=config.program_pause_ms))
    steps.append(HandshakeStep("STX", bytes([Opcode.STX]), config.stx_drain_ms))
    steps.append(HandshakeStep("ACK", bytes([Opcode.ACK]), config.ack_drain_ms))
    return steps


class HandshakeSequencer:
    """
    Replays the CPS wake-up sequence.

    Nothing is validated and nothing can fail: replies are logged and
    counted, transport errors are logged and the next step runs anyway.
    The point is to leave the radio in the state where ``R`` reads work.
    """

    def __init__(self, link: RadioLink):
        self.link = link
        self.steps = build_handshake_steps(link.config)

    def run(self) -> List[Tuple[str, int]]:
        """Run every step. Returns (label, reply byte count) per step."""
        link = self.link
        link.set_state(LinkState.HANDSHAKE)
        link.emit("log", msg="Handshake: pulsing RTS/DTR", level="info")
        try:
            link.transport.pulse_control_lines()
        except (TransportError, serial.SerialException) as e:
            log.warning("RTS/DTR pulse failed: %s", e)
        if link.config.pulse_settle_ms:
            time.sleep(link.config.pulse_settle_ms / 1000.0)

        observed = []
        for step in self.steps:
            link.send(step.payload, step.label)
            if step.pause_ms:
                time.sleep(step.pause_ms / 1000.0)
            seen = link.drain(step.drain_ms, step.label) if step.drain_ms else 0
            observed.append((step.label, seen))

        total = sum(n for _, n in observed)
        link.emit("log", msg=f"Handshake complete ({len(self.steps)} steps, {total} reply bytes)",
                  level="info")
        link.set_state(LinkState.PROGRAM_MODE)
        return observed


# ═══════════════════════════════════════════════════════════════════════
# SECTION 7 — BLOCK READ PROTOCOL
# ═══════════════════════════════════════════════════════════════════════

def build_read_request(address: int, length: int) -> bytes:
    """``52 A2 A1 A0 Llo Lhi`` — 24-bit big-endian address, 16-bit LE length."""
    return bytes([
        Opcode.READ,
        (address >> 16) & 0xFF, (address >> 8) & 0xFF, address & 0xFF,
        length & 0xFF, (length >> 8) & 0xFF,
    ])


class BlockReader:
    """
    ``R``/``W`` block reads into a ``MemoryImage``.

    Request: 52 A2 A1 A0 Llo Lhi
    Reply:   [junk...] 57 A2 A1 A0 Llo Lhi <length payload bytes>

    The radio often has stale discovery chatter or ACKs queued ahead of
    the reply, so the header is found by scanning for 0x57 one byte at a
    time. The echoed address/length must match the request exactly.
    """

    def __init__(self, link: RadioLink, image: MemoryImage):
        self.link = link
        self.image = image
        self.progress = 0

    @property
    def config(self) -> ReaderConfig:
        return self.link.config

    def in_range(self, address: int, length: int) -> bool:
        return (0 <= address <= DM32_MAX_ADDRESS and 0 <= length <= DM32_MAX_LENGTH
                and self.image.fits(address, length))

    def _sync_header(self) -> Optional[bytes]:
        """Find the 6-byte reply header, discarding anything before 0x57."""
        cfg = self.config
        waited = 0
        discarded = 0
        deadline = time.monotonic() + cfg.header_sync_budget_ms / 1000.0
        while waited < cfg.header_sync_budget_ms and time.monotonic() < deadline:
            b = self.link.read_exact(1, cfg.header_byte_timeout_ms)
            if not b:
                waited += cfg.header_empty_cost_ms
                continue
            if b[0] == Opcode.READ_REPLY:
                tail = self.link.read_exact(READ_HEADER_LEN - 1, cfg.header_tail_timeout_ms)
                if len(tail) != READ_HEADER_LEN - 1:
                    log.warning("Short header tail: %d/5 bytes", len(tail))
                    return None
                if discarded:
                    log.debug("Discarded %d bytes before header", discarded)
                return b + tail
            discarded += 1
            if discarded > cfg.header_discard_max:
                log.warning("Header sync gave up after %d junk bytes", discarded)
                return None
        log.warning("Header sync timed out (%d junk bytes)", discarded)
        return None

    def _advance_progress(self) -> None:
        if self.progress >= 100:
            return
        pct = int(self.image.written_max * 100 / self.image.capacity)
        self.progress = min(100, max(self.progress, pct))
        self.link.emit("progress", current=self.progress, total=100, label="Reading")

    def read_block(self, address: int, length: int) -> bool:
        """
        Read one block into the image at *address*.

        Returns False on out-of-range requests (no I/O at all), header
        timeout, header mismatch, or a payload chunk that never arrives.
        Bytes received before a payload failure stay in the image.
        """
        if not self.in_range(address, length):
            log.error("Read 0x%06X+%d out of range (capacity 0x%06X)",
                      address, length, self.image.capacity)
            return False

        request = build_read_request(address, length)
        if not self.link.send(request, "R"):
            return False

        header = self._sync_header()
        if header is None:
            log.error("No reply header for read 0x%06X+%d", address, length)
            return False
        if header[1:] != request[1:]:
            log.error("Header mismatch for 0x%06X+%d: got %s want %s", address, length,
                      hex_dump(header), hex_dump(bytes([Opcode.READ_REPLY]) + request[1:]))
            return False

        cfg = self.config
        offset = 0
        while offset < length:
            want = min(cfg.payload_chunk, length - offset)
            data = self.link.read_exact(want, cfg.payload_timeout_ms)
            if not data:
                log.error("Payload timeout at 0x%06X (%d/%d bytes)",
                          address + offset, offset, length)
                return False
            self.image.write(address + offset, data)
            offset += len(data)
            self._advance_progress()
        log.debug("Read 0x%06X+%d OK", address, length)
        return True

    def read_block_retry(self, address: int, length: int, attempts: Optional[int] = None) -> bool:
        """``read_block`` up to *attempts* times, backing off between failures."""
        if not self.in_range(address, length):
            log.error("Read 0x%06X+%d out of range, not retrying", address, length)
            return False
        attempts = attempts if attempts is not None else self.config.read_attempts
        for attempt in range(1, attempts + 1):
            if self.read_block(address, length):
                return True
            log.warning("Read 0x%06X+%d failed (attempt %d/%d)", address, length, attempt, attempts)
            if self.config.retry_backoff_ms:
                time.sleep(self.config.retry_backoff_ms / 1000.0)
        return False


# ═══════════════════════════════════════════════════════════════════════
# SECTION 8 — SIGNATURE LOCATOR (label → pad → scored record start)
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ParamPattern:
    """Leading parameter bytes seen on a known channel kind."""
    name: str
    lead: bytes
    p4_values: Tuple[int, ...]
    p5: int

    def matches(self, params: Sequence[int]) -> bool:
        return (len(params) >= 6 and bytes(params[:4]) == self.lead
                and params[4] in self.p4_values and params[5] == self.p5)


DIGITAL_PARAMS = ParamPattern("digital", b"\x14\x00\x00\x00", (0x30, 0x34), 0x01)
ANALOG_PARAMS = ParamPattern("analog", b"\x04\x80\x00\x00", (0x30,), 0x01)
PARAM_LEADS = (DIGITAL_PARAMS.lead, ANALOG_PARAMS.lead)


@dataclass(frozen=True)
class ScoringWeights:
    """Points per signal. A zero weight switches the signal off."""
    signature: int
    bcd_plausible: int
    simplex: int
    common_offset: int
    band_proximity: int
    digital_params: int
    analog_params: int
    ff_trailer: int
    float_plausible: int


@dataclass(frozen=True)
class ScoringPolicy:
    """
    How candidate record starts are scored and accepted.

    ``primary`` weighs a candidate where it stands, ``alternate`` weighs the
    same candidate shifted by ``alternate_shift`` bytes (some images carry
    a 4-byte pad). A candidate is accepted at ``accept_score``, or at the
    lower ``confirmed_accept_score`` when a parameter pattern lined up.
    """
    primary: ScoringWeights = field(default_factory=lambda: ScoringWeights(
        signature=3, bcd_plausible=5, simplex=2, common_offset=2, band_proximity=1,
        digital_params=6, analog_params=5, ff_trailer=2, float_plausible=1))
    alternate: ScoringWeights = field(default_factory=lambda: ScoringWeights(
        signature=2, bcd_plausible=6, simplex=2, common_offset=2, band_proximity=0,
        digital_params=7, analog_params=5, ff_trailer=0, float_plausible=0))
    alternate_shift: int = 4
    accept_score: int = 9
    confirmed_accept_score: int = 6
    signature_accepts_plausible_words: bool = True
    simplex_tolerance_mhz: float = 0.001
    common_offsets_mhz: Tuple[float, ...] = (5.0, 0.6)
    offset_tolerance_mhz: float = 0.001
    band_centres_mhz: Tuple[float, ...] = (144.0, 430.0)
    band_radius_mhz: float = 20.0

    def accepts(self, candidate: "SignatureCandidate") -> bool:
        if candidate.score >= self.accept_score:
            return True
        return candidate.param_confirmed and candidate.score >= self.confirmed_accept_score


@dataclass(frozen=True)
class SignatureCandidate:
    offset: int
    score: int
    param_confirmed: bool = False


def is_printable(b: int) -> bool:
    return 0x20 <= b <= 0x7E


def _plausible_pair(rx: float, tx: float) -> bool:
    # strict bounds on RX; TX may be zero (receive-only)
    return 30.0 < rx < 1000.0 and 0.0 <= tx < 1000.0


def matches_magic(mem: Sequence[int], s: int, end: int, allow_plausible: bool = True) -> bool:
    """
    Known byte shapes at a record start.

    Pattern A: 50 .. .. 44 50 .. .. 44 (simplex 44x.x875 pairs)
    Pattern B: 25 .. 44 [00] 25 .. 44
    Optionally any start whose two BCD words decode to a sane RX/TX.
    """
    if s + 8 >= end:
        return False
    if mem[s] == 0x50 and mem[s + 3] == 0x44 and mem[s + 4] == 0x50 and mem[s + 7] == 0x44:
        return True
    if mem[s] == 0x25 and mem[s + 2] == 0x44:
        idx = 4 if mem[s + 3] == 0x00 else 3
        if s + idx + 2 < end and mem[s + idx] == 0x25 and mem[s + idx + 2] == 0x44:
            return True
    if allow_plausible:
        rx = FrequencyDecoder.bcd_mhz(mem[s:s + 4])
        tx = FrequencyDecoder.bcd_mhz(mem[s + 4:s + 8])
        return _plausible_pair(rx, tx)
    return False


class SignatureLocator:
    """
    Finds where a slot's binary record starts.

    Slot layout as seen in dumps:
        <label 1..31 printable> 00 [0x00/0xFF filler ...] <record>
    The filler length varies, so every position in a short window after
    the filler (and up to 3 bytes of sub-alignment at each) is scored and
    the best one kept. Scan order is ascending offset then ascending nudge;
    a later candidate only wins by scoring strictly higher.
    """

    def __init__(self, image: MemoryImage, policy: ScoringPolicy = None,
                 config: ReaderConfig = None):
        self.image = image
        self.policy = policy or ScoringPolicy()
        self.config = config or ReaderConfig()

    def extract_label(self, base: int) -> Optional[Tuple[str, int]]:
        """Label at *base* and the address just past its NUL, or None."""
        mem = self.image.readable()
        limit = len(mem)
        if base + 1 >= limit:
            return None
        q = base
        while q < limit and is_printable(mem[q]) and q - base < self.config.label_max:
            q += 1
        if q == base:
            return None
        if not (q < limit and mem[q] == 0x00):
            return None
        return bytes(mem[base:q]).decode("ascii"), q + 1

    def skip_filler(self, cursor: int) -> int:
        """
        Step over 0x00/0xFF filler after the label.

        Filler ends early where a plausible BCD word starts, since a record
        whose low frequency digits are zero begins with 00 bytes.
        """
        mem = self.image.readable()
        limit = len(mem)
        for _ in range(self.config.label_pad_max):
            if cursor >= limit or mem[cursor] not in FILLER_BYTES:
                break
            if cursor + 4 <= limit and FrequencyDecoder.is_plausible(
                    FrequencyDecoder.bcd_mhz(mem[cursor:cursor + 4])):
                break
            cursor += 1
        return cursor

    def _score(self, mem: Sequence[int], sig: int, limit: int,
               weights: ScoringWeights) -> SignatureCandidate:
        policy = self.policy
        score = 0
        confirmed = False

        if weights.signature and matches_magic(mem, sig, limit,
                                               policy.signature_accepts_plausible_words):
            score += weights.signature

        rx = FrequencyDecoder.bcd_mhz(mem[sig:sig + 4])
        tx = FrequencyDecoder.bcd_mhz(mem[sig + 4:sig + 8])
        if _plausible_pair(rx, tx):
            score += weights.bcd_plausible
            diff = abs(tx - rx)
            if diff < policy.simplex_tolerance_mhz:
                score += weights.simplex
            if any(abs(diff - off) < policy.offset_tolerance_mhz for off in policy.common_offsets_mhz):
                score += weights.common_offset
            if any(abs(rx - c) < policy.band_radius_mhz for c in policy.band_centres_mhz):
                score += weights.band_proximity

        pb = sig + PARAMS_OFS
        if pb + 12 < limit:
            params = mem[pb:pb + 6]
            if DIGITAL_PARAMS.matches(params):
                score += weights.digital_params
                confirmed = True
            if ANALOG_PARAMS.matches(params):
                score += weights.analog_params
                confirmed = True
            if weights.ff_trailer and pb + 14 <= limit and all(
                    b == 0xFF for b in mem[pb + 10:pb + 14]):
                score += weights.ff_trailer

        if weights.float_plausible:
            rx_f = FrequencyDecoder.f32_mhz(mem[sig:sig + 4])
            tx_f = FrequencyDecoder.f32_mhz(mem[sig + 4:sig + 8])
            if _plausible_pair(rx_f, tx_f):
                score += weights.float_plausible

        return SignatureCandidate(sig, score, confirmed)

    def score_at(self, sig: int) -> SignatureCandidate:
        """Best of the primary reading at *sig* and the alternate at sig+shift."""
        mem = self.image.readable()
        limit = len(mem)
        best = self._score(mem, sig, limit, self.policy.primary)
        sig2 = sig + self.policy.alternate_shift
        if sig2 + SIG_MIN_SPAN < limit:
            alt = self._score(mem, sig2, limit, self.policy.alternate)
            if alt.score > best.score:
                best = alt
        return best

    def best_candidate(self, cursor: int) -> Optional[SignatureCandidate]:
        limit = self.image.written_max
        best: Optional[SignatureCandidate] = None
        for scan in range(self.config.sig_scan_max):
            base_sig = cursor + scan
            if base_sig + SIG_MIN_SPAN >= limit:
                break
            for nudge in range(SIG_NUDGE_MAX + 1):
                sig = base_sig + nudge
                if sig + SIG_MIN_SPAN >= limit:
                    break
                cand = self.score_at(sig)
                if best is None or cand.score > best.score:
                    best = cand
        return best

    def locate(self, base: int) -> Optional[Tuple[str, SignatureCandidate]]:
        """Label and accepted record start for the slot at *base*, or None."""
        label = self.extract_label(base)
        if label is None:
            return None
        name, cursor = label
        best = self.best_candidate(self.skip_filler(cursor))
        if best is None or not self.policy.accepts(best):
            return None
        return name, best


# ═══════════════════════════════════════════════════════════════════════
# SECTION 9 — SLOT PARSER
# ═══════════════════════════════════════════════════════════════════════

class ChannelMode(Enum):
    DIGITAL = "Digital"
    ANALOG = "Analog"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class LayoutFields:
    timeslot: int
    color_code: int
    power_high: bool


class ParamLayout:
    """How a 16-byte parameter block is read. Chosen once per slot."""
    mode = ChannelMode.UNKNOWN

    def decode(self, params: bytes) -> LayoutFields:
        raise NotImplementedError

    @staticmethod
    def power_high(params: bytes) -> bool:
        return bool(params[PARAM_IDX_POWER] & POWER_HIGH_BIT)


class DigitalLayout(ParamLayout):
    """
    14 00 00 00 <ts/cc> 01 ...

    Selection needs params[5] == 0x01, so the power bit (params[5] & 0x04)
    always reads low here. Power for digital slots is not really decoded.
    """
    mode = ChannelMode.DIGITAL

    def decode(self, params: bytes) -> LayoutFields:
        tscc = params[PARAM_IDX_KIND_TSCC]
        return LayoutFields(2 if tscc & TS2_BIT else 1, tscc & CC_MASK, self.power_high(params))


class AnalogLayout(ParamLayout):
    """04 80 00 00 ..."""
    mode = ChannelMode.ANALOG

    def decode(self, params: bytes) -> LayoutFields:
        return LayoutFields(1, 0, self.power_high(params))


class LegacyFallback(ParamLayout):
    """Indices from before the lead patterns were known. Unverified."""
    mode = ChannelMode.UNKNOWN

    def decode(self, params: bytes) -> LayoutFields:
        tscc = params[LEGACY_IDX_TSCC]
        return LayoutFields(2 if tscc & TS2_BIT else 1, tscc & CC_MASK,
                            bool(params[LEGACY_IDX_POWER] & POWER_HIGH_BIT))


def select_layout(params: bytes) -> ParamLayout:
    if params[:4] == DIGITAL_PARAMS.lead and params[5] == DIGITAL_PARAMS.p5:
        return DigitalLayout()
    if params[:4] == ANALOG_PARAMS.lead:
        return AnalogLayout()
    return LegacyFallback()


@dataclass(frozen=True)
class ChannelSlot:
    slot_base: int
    signature_offset: int
    name: str
    rx_mhz: float
    tx_mhz: float
    timeslot: int
    color_code: int
    power_high: bool
    monitor_flag: bool
    raw_params: bytes
    mode: ChannelMode = ChannelMode.UNKNOWN

    @property
    def power(self) -> str:
        return "High" if self.power_high else "Low"


class SlotParser:
    """Turns one slot window into a ``ChannelSlot``; misses are just None."""

    def __init__(self, image: MemoryImage, policy: ScoringPolicy = None,
                 config: ReaderConfig = None):
        self.image = image
        self.config = config or ReaderConfig()
        self.locator = SignatureLocator(image, policy, self.config)

    def slot_bases(self) -> Iterable[int]:
        cfg = self.config
        for i in range(cfg.slot_window):
            base = cfg.slot_base + i * cfg.slot_stride
            if base + 1 >= self.image.written_max or base >= CHAN_SCAN_LIMIT:
                return
            yield base

    def slot_index(self, slot: ChannelSlot) -> int:
        return (slot.slot_base - self.config.slot_base) // self.config.slot_stride

    def parse(self, base: int) -> Optional[ChannelSlot]:
        located = self.locator.locate(base)
        if located is None:
            return None
        name, cand = located
        s = cand.offset
        if not self.image.covers(s, SLOT_RECORD_LEN):
            return None
        mem = self.image.readable()

        rx = FrequencyDecoder.decode(mem[s:s + 4])
        tx_ofs, params_ofs = 4, PARAMS_OFS
        if bytes(mem[s + 4:s + 8]) in PARAM_LEADS:
            tx_ofs, params_ofs = 8, 4
        tx = FrequencyDecoder.decode(mem[s + tx_ofs:s + tx_ofs + 4], rx)
        if 100.0 <= rx <= 1000.0 and (tx < 100.0 or tx > 1000.0 or abs(tx - rx) > 10.0):
            tx = rx

        params = bytes(mem[s + params_ofs:s + params_ofs + PARAMS_LEN])
        layout = select_layout(params)
        fields = layout.decode(params)
        monitor = bool(params[PARAM_IDX_MON] & MONITOR_BIT)

        return ChannelSlot(
            slot_base=base, signature_offset=s, name=name, rx_mhz=rx, tx_mhz=tx,
            timeslot=fields.timeslot, color_code=fields.color_code,
            power_high=fields.power_high, monitor_flag=monitor,
            raw_params=params, mode=layout.mode,
        )

    def scan(self) -> List[ChannelSlot]:
        slots = [s for s in (self.parse(b) for b in self.slot_bases()) if s is not None]
        log.info("Slot scan: %d channels in %d-slot window", len(slots), self.config.slot_window)
        return slots


# ═══════════════════════════════════════════════════════════════════════
# SECTION 10 — DOWNLOAD (handshake → probe → region reads)
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class DownloadReport:
    regions_ok: List[Region] = field(default_factory=list)
    regions_failed: List[Region] = field(default_factory=list)
    probe_ok: bool = False
    written_max: int = 0
    progress: int = 0
    elapsed_s: float = 0.0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return bool(self.regions_ok) and not self.regions_failed and not self.cancelled


class RadioReader:
    """
    High-level read: wake the radio, probe, then fetch each region.

    Failed regions are recorded and skipped; the image keeps whatever
    arrived. Cancellation is checked between regions only.
    """

    def __init__(self, link: RadioLink, image: MemoryImage = None):
        self.link = link
        self.image = image or MemoryImage(link.config.capacity)
        self.handshake = HandshakeSequencer(link)
        self.reader = BlockReader(link, self.image)

    def download(self, regions: Sequence[Region] = None) -> DownloadReport:
        regions = list(regions) if regions is not None else list(DEFAULT_REGION_MAP)
        cfg = self.link.config
        report = DownloadReport()
        self.link.emit("log", msg="═══ DOWNLOAD STARTED ═══", level="info")
        start_time = time.monotonic()

        self.handshake.run()
        self.link.set_state(LinkState.READING)

        report.probe_ok = self.reader.read_block_retry(cfg.probe_address, cfg.probe_length)
        if not report.probe_ok:
            self.link.emit("log", msg=f"Probe read at 0x{cfg.probe_address:06X} failed",
                           level="warning")
        self.link.drain(cfg.probe_drain_ms, "probe")

        for i, region in enumerate(regions):
            if self.link.cancelled:
                report.cancelled = True
                break
            self.link.emit("log", msg=f"Reading region {i + 1}/{len(regions)}: {region}", level="info")
            if self.reader.read_block_retry(region.address, region.length):
                report.regions_ok.append(region)
            else:
                report.regions_failed.append(region)
                self.link.emit("log", msg=f"Region {region} failed", level="error")

        report.written_max = self.image.written_max
        report.progress = self.reader.progress
        report.elapsed_s = time.monotonic() - start_time
        self.link.set_state(LinkState.PROGRAM_MODE)
        self.link.emit("log", msg=(
            f"═══ DOWNLOAD {'CANCELLED' if report.cancelled else 'COMPLETE'} "
            f"({report.elapsed_s:.1f}s, {len(report.regions_ok)}/{len(regions)} regions, "
            f"written_max 0x{report.written_max:06X}) ═══"), level="info")
        return report

    def channels(self, policy: ScoringPolicy = None) -> List[ChannelSlot]:
        return SlotParser(self.image, policy, self.link.config).scan()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 11 — REPORTS, ZONES & CPS EXPORT VALIDATION
# ═══════════════════════════════════════════════════════════════════════

ZONES_MAX_ADDR = 0x010000
CLEAN_ZONES_MAX_ADDR = 0x002000
CLEAN_ZONE_NAME_MAX = 16
ZONE_NAME_MAX = 31
DEBUG_SLOT_COUNT = 128
STRING_BUF_MAX = 63
SAMPLE_MAX = 39

SLOTS_DEBUG_CSV = "dm32_slots_debug.csv"
CHANNEL_FIELDS_CSV = "dm32_channels_fields.csv"
ZONES_CSV = "dm32_zones.csv"
CHANNELS_CSV = "dm32_channels.csv"


@dataclass(frozen=True)
class ZoneName:
    offset: int
    name: str


@dataclass
class RegionSummary:
    region: Region
    nonff: int
    non00: int
    strings: int
    samples: List[str]
    hint: str = ""


@dataclass
class ValidationResult:
    kind: str                     # "zones" or "channels"
    checked: int = 0
    missing: List[str] = field(default_factory=list)
    radio_zones: int = 0
    radio_channels: int = 0

    @property
    def passed(self) -> bool:
        return not self.missing


def looks_like_zone(name: str) -> bool:
    """Proper-noun-ish label: 3..24 chars, leading capital, some lowercase, not shouting."""
    n = len(name)
    if n < 3 or n > 24 or not ("A" <= name[0] <= "Z"):
        return False
    lowers = uppers = 0
    for c in name:
        if not (c.isascii() and (c.isalnum() or c in " -")):
            return False
        if c.islower():
            lowers += 1
        elif c.isupper():
            uppers += 1
    return lowers > 0 and uppers <= n // 2 + 1


def _printable_runs(mem: Sequence[int], start: int, end: int) -> Iterable[Tuple[int, str]]:
    """(offset, text) for each printable run, capped like a fixed string buffer."""
    p = start
    while p < end:
        if not is_printable(mem[p]):
            p += 1
            continue
        q = p
        while q < end and is_printable(mem[q]) and q - p < STRING_BUF_MAX:
            q += 1
        yield p, bytes(mem[p:q]).decode("ascii")
        p = q


def _hex(data: bytes) -> str:
    return bytes(data).hex(" ").upper()


class CodeplugReport:
    """Text and CSV views of a downloaded image, for mapping work."""

    @staticmethod
    def region_summary(image: MemoryImage, regions: Sequence[Region]) -> List[RegionSummary]:
        mem = image.readable()
        out = []
        for region in regions:
            e = min(region.end, image.written_max)
            chunk = bytes(mem[region.address:e]) if region.address < e else b""
            samples = []
            strings = 0
            for _, text in _printable_runs(mem, region.address, e):
                if len(text) >= 4:
                    strings += 1
                    if len(samples) < 2:
                        samples.append(text[:SAMPLE_MAX])
            hint = ""
            if any("Contacts" in s for s in samples):
                hint = "contacts?"
            elif any("Roam" in s for s in samples):
                hint = "roam?"
            elif strings > 10 and 0x006000 <= region.address < 0x007000:
                hint = "channel/zone labels?"
            out.append(RegionSummary(region, sum(1 for b in chunk if b != 0xFF),
                                     sum(1 for b in chunk if b != 0x00), strings, samples, hint))
        return out

    @staticmethod
    def find_zone_names(image: MemoryImage, regions: Sequence[Region]) -> List[ZoneName]:
        mem = image.readable()
        zones: List[ZoneName] = []
        seen = set()
        for region in regions:
            if region.address >= ZONES_MAX_ADDR:
                continue
            e = min(region.end, image.written_max)
            for offset, text in _printable_runs(mem, region.address, e):
                if looks_like_zone(text):
                    name = text[:ZONE_NAME_MAX]
                    if name not in seen:
                        seen.add(name)
                        zones.append(ZoneName(offset, name))
        return zones

    @staticmethod
    def clean_zone_names(zones: Sequence[ZoneName]) -> List[ZoneName]:
        """The short zone-name table at low addresses (e.g. 'Richmond', 'Goochland')."""
        clean = []
        seen = set()
        for z in zones:
            if z.offset < CLEAN_ZONES_MAX_ADDR and 0 < len(z.name) <= CLEAN_ZONE_NAME_MAX:
                if z.name not in seen:
                    seen.add(z.name)
                    clean.append(z)
        return clean

    @staticmethod
    def slots_debug_rows(image: MemoryImage, config: ReaderConfig = None) -> List[List[str]]:
        """
        Raw view of the first slots for reverse engineering.

        Unlike the parser this takes the first byte-pattern match after
        the label (0xFF padding only), so it shows what the bytes look like
        even where the scored search rejects the slot.
        """
        cfg = config or ReaderConfig()
        mem = image.readable()
        wm = image.written_max
        end = cfg.slot_base + cfg.slot_stride * cfg.slot_window
        rows = []
        for i in range(DEBUG_SLOT_COUNT):
            p = cfg.slot_base + i * cfg.slot_stride
            if p + 1 >= wm or p >= end:
                break
            q = p
            while q < wm and is_printable(mem[q]) and q - p < STRING_BUF_MAX:
                q += 1
            if not (q < wm and mem[q] == 0x00):
                continue
            label = bytes(mem[p:q]).decode("ascii")
            s = q + 1
            for _ in range(cfg.label_pad_max):
                if s < wm and mem[s] == 0xFF:
                    s += 1
                else:
                    break
            sig = s
            for _ in range(cfg.sig_scan_max):
                if sig >= wm:
                    break
                if matches_magic(mem, sig, wm):
                    s = sig
                    break
                sig += 1

            rx_b = tx_b = rx_f = tx_f = 0.0
            if s + 8 <= wm:
                rx_b = FrequencyDecoder.bcd_mhz(mem[s:s + 4])
                tx_b = FrequencyDecoder.bcd_mhz(mem[s + 4:s + 8])
                rx_f = FrequencyDecoder.f32_mhz(mem[s:s + 4])
                tx_f = FrequencyDecoder.f32_mhz(mem[s + 4:s + 8])
            slot_bytes = mem[p:min(p + cfg.slot_stride, wm)]
            pb = s + PARAMS_OFS
            params = mem[pb:min(pb + PARAMS_LEN, wm)] if pb < wm else b""
            sig_bytes = mem[s:min(s + 32, wm)] if s < wm else b""
            rows.append([
                str(i), f"{p:06X}", label,
                f"{rx_b:.5f}", f"{tx_b:.5f}", f"{rx_f:.5f}", f"{tx_f:.5f}",
                _hex(slot_bytes), _hex(params), _hex(sig_bytes),
            ])
        return rows

    @staticmethod
    def write_slots_debug_csv(image: MemoryImage, path: str, config: ReaderConfig = None) -> int:
        rows = CodeplugReport.slots_debug_rows(image, config)
        with open(path, "w", newline="", encoding="utf-8") as f:
            w = csv.writer(f)
            w.writerow(["slot", "offset_hex", "label", "rx_bcd_mhz", "tx_bcd_mhz",
                        "rx_f32_mhz", "tx_f32_mhz", "bytes_hex", "params_hex16", "sig_hex32"])
            w.writerows(rows)
        log.info("Wrote %d slot rows to %s", len(rows), path)
        return len(rows)

    @staticmethod
    def write_channel_fields_csv(slots: Sequence[ChannelSlot], path: str,
                                 config: ReaderConfig = None) -> int:
        cfg = config or ReaderConfig()
        with open(path, "w", newline="", encoding="utf-8") as f:
            w = csv.writer(f)
            w.writerow(["slot", "offset_hex", "label", "rx_mhz", "tx_mhz",
                        "timeslot", "power", "color_code", "params_hex16"])
            for s in slots:
                w.writerow([(s.slot_base - cfg.slot_base) // cfg.slot_stride, f"{s.slot_base:06X}",
                            s.name, f"{s.rx_mhz:.5f}", f"{s.tx_mhz:.5f}", s.timeslot,
                            s.power, s.color_code, _hex(s.raw_params)])
        log.info("Wrote %d channel rows to %s", len(slots), path)
        return len(slots)

    @staticmethod
    def write_zones_csv(zones: Sequence[ZoneName], path: str) -> int:
        with open(path, "w", newline="", encoding="utf-8") as f:
            w = csv.writer(f)
            w.writerow(["offset_hex", "name"])
            for z in zones:
                w.writerow([f"{z.offset:06X}", z.name])
        return len(zones)

    @staticmethod
    def write_channels_csv(slots: Sequence[ChannelSlot], path: str) -> int:
        with open(path, "w", newline="", encoding="utf-8") as f:
            w = csv.writer(f)
            w.writerow(["offset_hex", "name"])
            for s in slots:
                w.writerow([f"{s.slot_base:06X}", s.name])
        return len(slots)

    @staticmethod
    def tx_column(rx: float, tx: float) -> str:
        diff = tx - rx
        for off, text in ((5.0, "+5"), (-5.0, "-5"), (0.6, "+0.6"), (-0.6, "-0.6")):
            if abs(diff - off) < 0.001:
                return text
        return f"{tx:.5f}"

    @staticmethod
    def format_config(image: MemoryImage, regions: Sequence[Region],
                      slots: Sequence[ChannelSlot], zones: Sequence[ZoneName],
                      radio_name: str = "Baofeng DM-32") -> str:
        """Human-readable dump: region map, channel tables, zone table."""
        lines = [f"Radio: {radio_name}", "# DM-32: region map (experimental)"]
        for rs in CodeplugReport.region_summary(image, regions):
            r = rs.region
            hint = f" ({rs.hint})" if rs.hint else ""
            lines.append(f"0x{r.address:06X}..0x{r.end - 1:06X} size={r.length} "
                         f"nonFF={rs.nonff} non00={rs.non00} strings={rs.strings}{hint}")
            for n, sample in enumerate(rs.samples):
                lines.append(f"{'  e.g. ' if n == 0 else '       '}'{sample}'")

        analog = [s for s in slots if s.mode == ChannelMode.ANALOG]
        digital = [s for s in slots if s.mode != ChannelMode.ANALOG]
        if slots:
            lines += [
                "",
                "# Table of digital channels.",
                f"# 1) Channel number: 1-{DM32_NCHAN}",
                "# 2) Name: up to 16 characters, use '_' instead of space",
                "# 3) Receive frequency in MHz",
                "# 4) Transmit frequency or +/- offset in MHz",
                "# 5) Transmit power: High, Low",
                "# 6) Scan list: - or index in Scanlist table",
                "# 7) Transmit timeout timer in seconds: 0, 15, 30, 45... 555",
                "# 8) Receive only: -, +",
                "# 9) Admit criteria: -, Free, Color",
                "# 10) Color code: 0, 1, 2, 3... 15",
                "# 11) Time slot: 1 or 2",
                "# 12) Receive group list: - or index in Grouplist table",
                "# 13) Contact for transmit: - or index in Contacts table",
                "#",
                "Digital Name             Receive   Transmit Power Scan TOT RO Admit  Color Slot RxGL TxContact",
            ]
            for idx, ch in enumerate(digital, 1):
                name16 = ch.name[:16].replace(" ", "_")
                txcol = CodeplugReport.tx_column(ch.rx_mhz, ch.tx_mhz)
                lines.append(f"{idx:5d}   {name16:<16.16} {ch.rx_mhz:<8.6g} {txcol:<8} "
                             f"{ch.power:<5} {'-':<4} {'-':<3} {'-':<2} {ch.color_code:<5d} "
                             f"{ch.timeslot:<4d} {'-':<4} {'-':<8}")
            lines += [
                "",
                "# Table of analog channels.",
                f"# 1) Channel number: 1-{DM32_NCHAN}",
                "# 2) Name: up to 16 characters, use '_' instead of space",
                "# 3) Receive frequency in MHz",
                "# 4) Transmit frequency or +/- offset in MHz",
                "# 5) Transmit power: High, Low",
                "# 6) Scan list: - or index",
                "# 7) Transmit timeout timer in seconds: 0, 15, 30, 45... 555",
                "# 8) Receive only: -, +",
                "# 9) Admit criteria: -, Free, Tone",
                "# 10) Squelch level: 0, 1, 2, 3, 4, 5, 6, 7, 8, 9",
                "# 11) Guard tone for receive, or '-' to disable",
                "# 12) Guard tone for transmit, or '-' to disable",
                "# 13) Bandwidth in kHz: 12.5, 20, 25",
                "#",
                "Analog  Name             Receive   Transmit Power Scan TOT RO Admit  Squelch RxTone TxTone Width",
            ]
            # squelch/tones/width not mapped yet
            for idx, ch in enumerate(analog, len(digital) + 1):
                name16 = ch.name[:16].replace(" ", "_")
                txcol = CodeplugReport.tx_column(ch.rx_mhz, ch.tx_mhz)
                lines.append(f"{idx:5d}   {name16:<16.16} {ch.rx_mhz:<8.6g} {txcol:<8} "
                             f"{ch.power:<5} {'-':<4} {'-':<3} {'-':<2} {'-':<6} {'-':<7} "
                             f"{'-':<6} {'-':<6} {'-'}")

        if zones:
            lines += [
                "",
                "# Table of channel zones.",
                f"# 1) Zone number: 1-{DM32_NZONES}",
                "# 2) Name: up to 16 characters, use '_' instead of space",
                "# 3) List of channels: numbers and ranges (N-M) separated by comma",
                "#",
                "Zone    Name             Channels",
            ]
            for i, z in enumerate(zones, 1):
                lines.append(f"{i:4d}    {z.name:<16.16} -")
        return "\n".join(lines) + "\n"


def validate_export(path: str, slots: Sequence[ChannelSlot],
                    zones: Sequence[ZoneName]) -> ValidationResult:
    """
    Check a CPS CSV export against what the image contains.

    Zone exports (``No.,Zone Name,Channel Members``) check every zone name
    and every ``|``-separated member; channel exports (``No.,Channel
    Name,...``) check every channel name. Names compare exactly.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"CSV not found: {path}")
    with open(p, newline="", encoding="utf-8-sig") as f:
        rows = list(csv.reader(f))
    if not rows:
        raise ValueError(f"Empty CSV input: {path}")
    header = ",".join(rows[0])
    zone_names = {z.name for z in zones}
    chan_names = {s.name for s in slots}

    if "Zone Name" in header and "Channel Members" in header:
        result = ValidationResult("zones")
        for row in rows[1:]:
            if len(row) < 3:
                continue
            zone_name = row[1]
            result.checked += 1
            if zone_name not in zone_names:
                result.missing.append(f"zone: {zone_name}")
            for member in ",".join(row[2:]).split("|"):
                member = member.strip(" \t")
                if member and member not in chan_names:
                    result.missing.append(f"channel: {member} (zone {zone_name})")
    elif "Channel Name" in header:
        result = ValidationResult("channels")
        for row in rows[1:]:
            if len(row) < 3:
                continue
            result.checked += 1
            if row[1] not in chan_names:
                result.missing.append(f"channel: {row[1]}")
    else:
        raise ValueError(f"Unsupported CSV format for DM-32 validation. Header: {header}")

    result.radio_zones = len(zones)
    result.radio_channels = len(slots)
    log.info("Validated %d %s from %s: %d missing", result.checked, result.kind, path,
             len(result.missing))
    return result


# ═══════════════════════════════════════════════════════════════════════
# SECTION 12 — GUI (PySide6 Frontend)
# ═══════════════════════════════════════════════════════════════════════

if GUI_AVAILABLE:

    class LogWidget(QTextEdit):
        """Color-coded log output widget."""

        COLORS = {
            "info":    QColor(200, 200, 200),
            "warning": QColor(255, 165, 0),
            "error":   QColor(255, 80, 80),
            "debug":   QColor(120, 120, 120),
            "success": QColor(100, 255, 100),
        }

        def __init__(self, parent=None):
            super().__init__(parent)
            self.setReadOnly(True)
            self.setFont(QFont("Consolas", 9))
            self.setStyleSheet("""
                QTextEdit {
                    background-color: #1e1e1e;
                    color: #d4d4d4;
                    border: 1px solid #3c3c3c;
                    padding: 4px;
                }
            """)

        def append_log(self, msg: str, level: str = "info") -> None:
            color = self.COLORS.get(level, self.COLORS["info"])
            ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]
            self.setTextColor(color)
            self.append(f"{ts}  {msg}")
            self.verticalScrollBar().setValue(self.verticalScrollBar().maximum())

    class ChannelTableWidget(QTableWidget):
        """Decoded channel slots, one row each. Read-only."""

        HEADERS = ["Slot", "Offset", "Name", "Mode", "RX MHz", "TX MHz",
                   "Power", "TS", "CC", "Mon", "Params"]

        def __init__(self, parent=None):
            super().__init__(0, len(self.HEADERS), parent)
            self.setHorizontalHeaderLabels(self.HEADERS)
            self.setEditTriggers(QAbstractItemView.NoEditTriggers)
            self.setSelectionBehavior(QAbstractItemView.SelectRows)
            self.setAlternatingRowColors(True)
            self.verticalHeader().setVisible(False)
            self.horizontalHeader().setSectionResizeMode(QHeaderView.ResizeToContents)
            self.horizontalHeader().setStretchLastSection(True)
            self.setFont(QFont("Consolas", 9))

        def load_slots(self, slots: Sequence[ChannelSlot], config: ReaderConfig = None) -> None:
            cfg = config or ReaderConfig()
            self.setRowCount(len(slots))
            for row, s in enumerate(slots):
                values = [
                    str((s.slot_base - cfg.slot_base) // cfg.slot_stride),
                    f"0x{s.slot_base:06X}", s.name, s.mode.value,
                    f"{s.rx_mhz:.5f}", f"{s.tx_mhz:.5f}", s.power,
                    str(s.timeslot), str(s.color_code), "Y" if s.monitor_flag else "-",
                    _hex(s.raw_params),
                ]
                for col, text in enumerate(values):
                    item = QTableWidgetItem(text)
                    if col in (0, 4, 5, 7, 8):
                        item.setTextAlignment(Qt.AlignRight | Qt.AlignVCenter)
                    self.setItem(row, col, item)

    class OptionsWidget(QWidget):
        """Options tab for ReaderConfig timing/retry parameters."""
        config_changed = Signal()

        def __init__(self, config: ReaderConfig, parent=None):
            super().__init__(parent)
            self._config = config
            self._build_ui()
            self._load_from_config(config)

        def _build_ui(self) -> None:
            layout = QVBoxLayout(self)
            layout.setSpacing(12)
            layout.setContentsMargins(16, 16, 16, 16)

            conn_group = QGroupBox("Connection Settings")
            conn_layout = QFormLayout(conn_group)
            self.spin_baud = QSpinBox()
            self.spin_baud.setRange(1200, 921600)
            self.spin_baud.setSingleStep(100)
            self.spin_baud.setToolTip("Programming cable baud rate (DM-32: 115200)")
            conn_layout.addRow("Baud Rate:", self.spin_baud)
            layout.addWidget(conn_group)

            read_group = QGroupBox("Block Read Settings")
            read_layout = QFormLayout(read_group)

            self.spin_header_budget = QSpinBox()
            self.spin_header_budget.setRange(200, 60000)
            self.spin_header_budget.setSuffix(" ms")
            self.spin_header_budget.setSingleStep(100)
            self.spin_header_budget.setToolTip("How long to hunt for the 0x57 reply header")
            read_layout.addRow("Header Sync Budget:", self.spin_header_budget)

            self.spin_chunk_timeout = QSpinBox()
            self.spin_chunk_timeout.setRange(50, 30000)
            self.spin_chunk_timeout.setSuffix(" ms")
            self.spin_chunk_timeout.setSingleStep(100)
            self.spin_chunk_timeout.setToolTip("Timeout per payload read")
            read_layout.addRow("Payload Timeout:", self.spin_chunk_timeout)

            self.spin_chunk = QSpinBox()
            self.spin_chunk.setRange(16, 4096)
            self.spin_chunk.setSuffix(" bytes")
            self.spin_chunk.setToolTip("Payload bytes requested per read")
            read_layout.addRow("Payload Chunk:", self.spin_chunk)

            self.spin_attempts = QSpinBox()
            self.spin_attempts.setRange(1, 20)
            self.spin_attempts.setToolTip("Attempts per region before it is marked failed")
            read_layout.addRow("Read Attempts:", self.spin_attempts)

            self.spin_backoff = QSpinBox()
            self.spin_backoff.setRange(0, 5000)
            self.spin_backoff.setSuffix(" ms")
            self.spin_backoff.setToolTip("Pause after a failed attempt")
            read_layout.addRow("Retry Backoff:", self.spin_backoff)
            layout.addWidget(read_group)

            btn_row = QHBoxLayout()
            self.apply_btn = QPushButton("Apply")
            self.apply_btn.clicked.connect(self._on_apply)
            btn_row.addWidget(self.apply_btn)
            self.reset_btn = QPushButton("Reset to Defaults")
            self.reset_btn.clicked.connect(self._on_reset)
            btn_row.addWidget(self.reset_btn)
            btn_row.addStretch()
            layout.addLayout(btn_row)
            layout.addStretch()

        def _load_from_config(self, config: ReaderConfig) -> None:
            self.spin_baud.setValue(config.baud)
            self.spin_header_budget.setValue(config.header_sync_budget_ms)
            self.spin_chunk_timeout.setValue(config.payload_timeout_ms)
            self.spin_chunk.setValue(config.payload_chunk)
            self.spin_attempts.setValue(config.read_attempts)
            self.spin_backoff.setValue(config.retry_backoff_ms)

        def apply_to_config(self, config: ReaderConfig) -> None:
            config.baud = self.spin_baud.value()
            config.header_sync_budget_ms = self.spin_header_budget.value()
            config.payload_timeout_ms = self.spin_chunk_timeout.value()
            config.payload_chunk = self.spin_chunk.value()
            config.read_attempts = self.spin_attempts.value()
            config.retry_backoff_ms = self.spin_backoff.value()

        def _on_apply(self) -> None:
            self.apply_to_config(self._config)
            self.config_changed.emit()

        def _on_reset(self) -> None:
            self._load_from_config(ReaderConfig())
            self.apply_to_config(self._config)
            self.config_changed.emit()

    class DownloadWorker(QObject):
        """
        Runs RadioReader.download on a QThread.

        Link progress/state events are forwarded as signals only while
        ``run`` is active. Link log lines are not forwarded; whoever owns
        the link routes those. ``log_message`` carries the worker's own errors.
        """
        progress = Signal(int, int, str)
        log_message = Signal(str, str)
        finished = Signal(bool)
        state_changed = Signal(str)

        def __init__(self, link: RadioLink, regions: Sequence[Region] = None, parent=None):
            super().__init__(parent)
            self.link = link
            self.regions = list(regions) if regions is not None else list(DEFAULT_REGION_MAP)
            self.reader = RadioReader(link)
            self.report: Optional[DownloadReport] = None

        @property
        def image(self) -> MemoryImage:
            return self.reader.image

        def _forward_progress(self, current: int, total: int, label: str = "") -> None:
            self.progress.emit(current, total, label)

        def _forward_state(self, state: LinkState) -> None:
            self.state_changed.emit(state.name)

        @Slot()
        def run(self) -> None:
            self.link.reset_cancel()
            self.link.on("progress", self._forward_progress)
            self.link.on("state", self._forward_state)
            try:
                self.report = self.reader.download(self.regions)
                self.finished.emit(bool(self.report.regions_ok))
            except Exception as e:
                self.log_message.emit(f"Exception: {e}", "error")
                log.exception("Download worker exception")
                self.finished.emit(False)
            finally:
                self.link.off("progress", self._forward_progress)
                self.link.off("state", self._forward_state)

    class MainWindow(QMainWindow):
        """Main application window."""
        # link log lines arrive on the worker thread; queued to the GUI thread
        link_log = Signal(str, str)

        STATE_COLORS = {
            "DISCONNECTED": "#f44",
            "CONNECTED": "#4fc3f7",
            "HANDSHAKE": "#ff9800",
            "PROGRAM_MODE": "#ffeb3b",
            "READING": "#4caf50",
            "ERROR": "#ff0000",
        }

        def __init__(self):
            super().__init__()
            self.setWindowTitle(f"{__app_name__} v{__version__}")
            self.setMinimumSize(1100, 750)
            self._apply_dark_theme()

            self._transport: Optional[BaseTransport] = None
            self._link: Optional[RadioLink] = None
            self._config = ReaderConfig()
            self._regions: List[Region] = list(DEFAULT_REGION_MAP)
            self._image: Optional[MemoryImage] = None
            self._image_path: Optional[str] = None
            self._slots: List[ChannelSlot] = []
            self._worker: Optional[DownloadWorker] = None
            self._thread: Optional[QThread] = None
            self._virtual_image_path: Optional[str] = None

            self._build_ui()
            self._connect_signals()
            self._refresh_ports()

        def _apply_dark_theme(self) -> None:
            self.setStyleSheet("""
                QMainWindow, QWidget { background-color: #1e1e1e; color: #d4d4d4; }
                QGroupBox { border: 1px solid #3c3c3c; border-radius: 4px; margin-top: 8px;
                            padding-top: 14px; color: #ccc; font-weight: bold; }
                QGroupBox::title { subcontrol-origin: margin; left: 10px; padding: 0 4px; }
                QPushButton { background: #3c3c3c; border: 1px solid #555; border-radius: 3px;
                              padding: 6px 16px; color: #ddd; min-height: 24px; }
                QPushButton:hover { background: #4c4c4c; }
                QPushButton:disabled { background: #2a2a2a; color: #666; }
                QPushButton#connectBtn { background: #1a5c1a; }
                QPushButton#downloadBtn { background: #1a3c6c; }
                QPushButton#downloadBtn:hover { background: #2a5c9c; }
                QComboBox { background: #3c3c3c; border: 1px solid #555; border-radius: 3px;
                            padding: 4px; color: #ddd; }
                QTableWidget { background: #1e1e1e; alternate-background-color: #252526;
                               gridline-color: #3c3c3c; }
                QHeaderView::section { background: #2d2d2d; color: #ccc; border: 1px solid #3c3c3c; }
                QProgressBar { background: #2a2a2a; border: 1px solid #3c3c3c; border-radius: 3px;
                               text-align: center; color: #ddd; }
                QProgressBar::chunk { background: #4fc3f7; border-radius: 2px; }
                QTabBar::tab { background: #2d2d2d; border: 1px solid #3c3c3c; padding: 6px 16px;
                               color: #aaa; }
                QTabBar::tab:selected { background: #3c3c3c; color: #fff; border-bottom: 2px solid #4fc3f7; }
                QStatusBar { background: #1e1e1e; color: #888; }
            """)

        def _build_ui(self) -> None:
            central = QWidget()
            self.setCentralWidget(central)
            main_layout = QVBoxLayout(central)
            main_layout.setSpacing(6)
            main_layout.setContentsMargins(8, 8, 8, 8)

            self._build_menu_bar()

            toolbar = QHBoxLayout()

            port_group = QGroupBox("Connection")
            port_layout = QHBoxLayout(port_group)
            self.port_combo = QComboBox()
            self.port_combo.setMinimumWidth(120)
            self.port_combo.setToolTip("Serial port of the CH340 programming cable")
            port_layout.addWidget(QLabel("Port:"))
            port_layout.addWidget(self.port_combo)

            self.transport_combo = QComboBox()
            self.transport_combo.addItem("PySerial (COM)", "pyserial")
            if D2XX_AVAILABLE:
                self.transport_combo.addItem("FTDI D2XX", "d2xx")
            self.transport_combo.addItem("Virtual DM-32", "virtual")
            self.transport_combo.setToolTip(
                "PySerial: standard COM port (CH340 driver)\n"
                "FTDI D2XX: direct FTDI driver\n"
                "Virtual DM-32: serve reads from a saved .img file"
            )
            self.transport_combo.currentIndexChanged.connect(self._on_transport_changed)
            port_layout.addWidget(self.transport_combo)

            self.refresh_btn = QPushButton("↻")
            self.refresh_btn.setFixedWidth(32)
            self.refresh_btn.setToolTip("Refresh serial port list")
            port_layout.addWidget(self.refresh_btn)

            self.connect_btn = QPushButton("Connect")
            self.connect_btn.setObjectName("connectBtn")
            self.connect_btn.setToolTip("Open the selected port")
            port_layout.addWidget(self.connect_btn)
            toolbar.addWidget(port_group)

            file_group = QGroupBox("Image")
            file_layout = QHBoxLayout(file_group)
            self.file_label = QLabel("No image")
            self.file_label.setStyleSheet("color: #888;")
            file_layout.addWidget(self.file_label)
            self.load_btn = QPushButton("Load .img")
            self.load_btn.setToolTip("Open a previously saved image and decode it offline")
            file_layout.addWidget(self.load_btn)
            self.save_btn = QPushButton("Save .img")
            self.save_btn.setEnabled(False)
            file_layout.addWidget(self.save_btn)
            self.export_btn = QPushButton("Export CSVs")
            self.export_btn.setEnabled(False)
            self.export_btn.setToolTip("Write slot debug, channel fields, zones and channels CSVs")
            file_layout.addWidget(self.export_btn)
            toolbar.addWidget(file_group)

            radio_group = QGroupBox("Radio")
            radio_layout = QHBoxLayout(radio_group)
            self.download_btn = QPushButton("Download")
            self.download_btn.setObjectName("downloadBtn")
            self.download_btn.setEnabled(False)
            self.download_btn.setToolTip(
                "Wake the radio, enter program mode and read the region map.\n"
                "Read only: nothing is written to the radio."
            )
            radio_layout.addWidget(self.download_btn)
            self.cancel_btn = QPushButton("Cancel")
            self.cancel_btn.setEnabled(False)
            self.cancel_btn.setToolTip("Stop after the region currently being read")
            radio_layout.addWidget(self.cancel_btn)
            toolbar.addWidget(radio_group)
            main_layout.addLayout(toolbar)

            self.progress_bar = QProgressBar()
            self.progress_bar.setMaximum(100)
            self.progress_bar.setFixedHeight(20)
            main_layout.addWidget(self.progress_bar)

            self.tabs = QTabWidget()
            self.channel_table = ChannelTableWidget()
            self.tabs.addTab(self.channel_table, "Channels")
            self.config_view = QTextEdit()
            self.config_view.setReadOnly(True)
            self.config_view.setFont(QFont("Consolas", 9))
            self.tabs.addTab(self.config_view, "Codeplug")
            self.log_widget = LogWidget()
            self.tabs.addTab(self.log_widget, "Log")
            self.options_tab = OptionsWidget(self._config)
            self.options_tab.config_changed.connect(self._on_options_changed)
            self.tabs.addTab(self.options_tab, "Options")
            main_layout.addWidget(self.tabs)

            self.status_bar = QStatusBar()
            self.setStatusBar(self.status_bar)
            self.state_label = QLabel("DISCONNECTED")
            self.state_label.setStyleSheet("color: #f44; font-weight: bold;")
            self.count_label = QLabel("")
            self.status_bar.addWidget(self.state_label)
            self.status_bar.addPermanentWidget(self.count_label)

        def _build_menu_bar(self) -> None:
            menu_bar = self.menuBar()

            file_menu = menu_bar.addMenu("&File")
            self.action_load = QAction("&Load Image...", self)
            self.action_load.setShortcut("Ctrl+O")
            file_menu.addAction(self.action_load)
            self.action_save = QAction("&Save Image...", self)
            self.action_save.setShortcut("Ctrl+S")
            self.action_save.setEnabled(False)
            file_menu.addAction(self.action_save)
            self.action_export = QAction("&Export CSVs...", self)
            self.action_export.setEnabled(False)
            file_menu.addAction(self.action_export)
            self.action_region_map = QAction("Load &Region Map...", self)
            file_menu.addAction(self.action_region_map)
            file_menu.addSeparator()
            self.action_exit = QAction("E&xit", self)
            self.action_exit.setShortcut("Ctrl+Q")
            file_menu.addAction(self.action_exit)

            radio_menu = menu_bar.addMenu("&Radio")
            self.action_connect = QAction("&Connect / Disconnect", self)
            radio_menu.addAction(self.action_connect)
            self.action_refresh_ports = QAction("&Refresh Ports", self)
            radio_menu.addAction(self.action_refresh_ports)
            radio_menu.addSeparator()
            self.action_download = QAction("&Download", self)
            self.action_download.setShortcut("Ctrl+D")
            self.action_download.setEnabled(False)
            radio_menu.addAction(self.action_download)
            self.action_cancel = QAction("C&ancel", self)
            self.action_cancel.setEnabled(False)
            radio_menu.addAction(self.action_cancel)

            help_menu = menu_bar.addMenu("&Help")
            self.action_about = QAction("&About", self)
            help_menu.addAction(self.action_about)

        def _connect_signals(self) -> None:
            self.link_log.connect(self.log_widget.append_log)
            self.refresh_btn.clicked.connect(self._refresh_ports)
            self.connect_btn.clicked.connect(self._toggle_connect)
            self.load_btn.clicked.connect(self._load_image)
            self.save_btn.clicked.connect(self._save_image)
            self.export_btn.clicked.connect(self._export_csvs)
            self.download_btn.clicked.connect(self._start_download)
            self.cancel_btn.clicked.connect(self._cancel_op)

            self.action_load.triggered.connect(self._load_image)
            self.action_save.triggered.connect(self._save_image)
            self.action_export.triggered.connect(self._export_csvs)
            self.action_region_map.triggered.connect(self._load_region_map)
            self.action_exit.triggered.connect(self.close)
            self.action_connect.triggered.connect(self._toggle_connect)
            self.action_refresh_ports.triggered.connect(self._refresh_ports)
            self.action_download.triggered.connect(self._start_download)
            self.action_cancel.triggered.connect(self._cancel_op)
            self.action_about.triggered.connect(self._show_about)

        def _refresh_ports(self) -> None:
            self.port_combo.clear()
            if self.transport_combo.currentData() == "virtual":
                self.port_combo.addItem("(virtual)")
                return
            ports = PySerialTransport.list_ports()
            for p in ports:
                self.port_combo.addItem(p)
            if not ports:
                self.port_combo.addItem("(no ports found)")

        def _on_transport_changed(self, _index: int) -> None:
            self._refresh_ports()

        def _toggle_connect(self) -> None:
            if self._link and self._link.transport.is_open:
                self._disconnect()
            else:
                self._connect()

        def _connect(self) -> None:
            transport_type = self.transport_combo.currentData()
            if transport_type == "pyserial":
                self._transport = PySerialTransport(self.port_combo.currentText(), self._config.baud)
            elif transport_type == "d2xx":
                self._transport = D2XXTransport(0, self._config.baud)
            elif transport_type == "virtual":
                img_path = self._virtual_image_path
                if not img_path:
                    img_path, _ = QFileDialog.getOpenFileName(
                        self, "Select Image for Virtual DM-32", "",
                        "Image Files (*.img *.bin);;All Files (*)")
                if not img_path:
                    self.log_widget.append_log("Virtual DM-32: no image selected", "warning")
                    return
                self._virtual_image_path = img_path
                self._transport = VirtualRadioTransport(image_path=img_path)
            else:
                return

            self._link = RadioLink(self._transport, self._config)
            self._link.on("log", lambda msg, level="info": self.link_log.emit(msg, level))
            if self._link.connect():
                self.connect_btn.setText("Disconnect")
                self.connect_btn.setStyleSheet("background: #8b1a1a;")
                self.download_btn.setEnabled(True)
                self.action_download.setEnabled(True)
                self._update_state("CONNECTED")
            else:
                self.log_widget.append_log("Connection failed", "error")
                self._update_state("ERROR")

        def _disconnect(self) -> None:
            if self._link:
                self._link.disconnect()
            self.connect_btn.setText("Connect")
            self.connect_btn.setStyleSheet("")
            self.download_btn.setEnabled(False)
            self.action_download.setEnabled(False)
            self._update_state("DISCONNECTED")

        def _set_image(self, image: MemoryImage, label: str) -> None:
            self._image = image
            self._slots = SlotParser(image, config=self._config).scan()
            self.channel_table.load_slots(self._slots, self._config)
            zones = CodeplugReport.clean_zone_names(
                CodeplugReport.find_zone_names(image, self._regions))
            self.config_view.setPlainText(
                CodeplugReport.format_config(image, self._regions, self._slots, zones))
            self.file_label.setText(label)
            self.file_label.setStyleSheet("color: #4fc3f7;")
            self.count_label.setText(f"{len(self._slots)} channels | written_max 0x{image.written_max:06X}")
            for w in (self.save_btn, self.export_btn, self.action_save, self.action_export):
                w.setEnabled(True)

        def _load_image(self) -> None:
            path, _ = QFileDialog.getOpenFileName(self, "Open Image", "",
                                                  "Image Files (*.img *.bin);;All Files (*)")
            if not path:
                return
            try:
                image = MemoryImage.load(path, self._config.capacity)
            except (OSError, ValueError) as e:
                self.log_widget.append_log(f"Failed to load image: {e}", "error")
                return
            self._image_path = path
            self._set_image(image, Path(path).name)
            self.log_widget.append_log(
                f"Loaded: {Path(path).name} ({image.written_max} bytes, {len(self._slots)} channels)", "info")

        def _save_image(self) -> None:
            if not self._image:
                return
            default = self._image_path or f"dm32_{datetime.now().strftime('%Y%m%d_%H%M%S')}.img"
            path, _ = QFileDialog.getSaveFileName(self, "Save Image", default,
                                                  "Image Files (*.img);;All Files (*)")
            if path:
                n = self._image.save(path)
                self._image_path = path
                self.log_widget.append_log(f"Saved: {Path(path).name} ({n} bytes)", "info")

        def _export_csvs(self) -> None:
            if not self._image:
                return
            folder = QFileDialog.getExistingDirectory(self, "Export CSVs to")
            if not folder:
                return
            written = write_report_csvs(self._image, self._regions, self._slots, Path(folder),
                                        self._config)
            for p in written:
                self.log_widget.append_log(f"Wrote {p}", "info")

        def _load_region_map(self) -> None:
            path, _ = QFileDialog.getOpenFileName(self, "Open Region Map", "",
                                                  "JSON Files (*.json);;All Files (*)")
            if not path:
                return
            try:
                self._regions = load_region_map(path, self._config.capacity)
            except (OSError, ValueError, KeyError) as e:
                self.log_widget.append_log(f"Region map rejected: {e}", "error")
                return
            self.log_widget.append_log(f"Region map: {len(self._regions)} regions from {Path(path).name}",
                                       "info")

        def _start_download(self) -> None:
            if not self._link:
                return
            self.cancel_btn.setEnabled(True)
            self.action_cancel.setEnabled(True)
            self.download_btn.setEnabled(False)
            self.action_download.setEnabled(False)
            self.progress_bar.setValue(0)

            self._thread = QThread()
            self._worker = DownloadWorker(self._link, self._regions)
            self._worker.moveToThread(self._thread)
            self._thread.started.connect(self._worker.run)
            self._worker.finished.connect(self._on_download_finished)
            self._worker.progress.connect(self._on_progress)
            self._worker.log_message.connect(lambda msg, lvl: self.log_widget.append_log(msg, lvl))
            self._worker.state_changed.connect(self._update_state)
            self._worker.finished.connect(self._thread.quit)
            self._thread.start()

        def _on_download_finished(self, success: bool) -> None:
            self.cancel_btn.setEnabled(False)
            self.action_cancel.setEnabled(False)
            connected = self._link is not None and self._link.transport.is_open
            self.download_btn.setEnabled(connected)
            self.action_download.setEnabled(connected)
            report = self._worker.report if self._worker else None
            if self._worker and self._worker.image.written_max:
                self._set_image(self._worker.image, "(downloaded)")
            if success and report:
                level = "success" if report.success else "warning"
                self.log_widget.append_log(
                    f"Download finished: {len(report.regions_ok)} ok, "
                    f"{len(report.regions_failed)} failed", level)
            else:
                self.log_widget.append_log("Download failed!", "error")

        def _on_progress(self, current: int, total: int, label: str) -> None:
            if total > 0:
                pct = int((current / total) * 100)
                self.progress_bar.setValue(pct)
                self.progress_bar.setFormat(f"{label} — {pct}%")

        def _cancel_op(self) -> None:
            if self._link:
                self._link.cancel()

        def _on_options_changed(self) -> None:
            self.log_widget.append_log("Options applied", "info")

        def _update_state(self, state_name: str) -> None:
            self.state_label.setText(state_name)
            self.state_label.setStyleSheet(
                f"color: {self.STATE_COLORS.get(state_name, '#888')}; font-weight: bold;")

        def _show_about(self) -> None:
            QMessageBox.about(
                self,
                f"About {__app_name__}",
                f"<h3>{__app_name__} v{__version__}</h3>"
                f"<p>Read-only codeplug reader</p>"
                f"<p>Target: {__target_radio__}</p>"
                f"<p>&copy; 2026 Jason King (pcmhacking.net: kingaustraliagg)</p>"
                f"<p>MIT License</p>"
            )

        def closeEvent(self, event) -> None:
            if self._thread and self._thread.isRunning():
                self._link.cancel()
                self._thread.quit()
                self._thread.wait(2000)
            if self._link and self._link.transport.is_open:
                self._link.disconnect()
            event.accept()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 13 — CLI INTERFACE
# ═══════════════════════════════════════════════════════════════════════

def cli_log_callback(msg: str, level: str = "info") -> None:
    """Print log messages to console."""
    prefix = {"info": "  ", "warning": "⚠ ", "error": "✗ ", "success": "✓ ", "debug": "  "}
    print(f"{prefix.get(level, '  ')}{msg}")

def cli_progress_callback(current: int, total: int, label: str = "") -> None:
    """Print progress to console."""
    if total > 0:
        pct = (current / total) * 100
        bar_len = 40
        filled = int(bar_len * current / total)
        bar = "█" * filled + "░" * (bar_len - filled)
        print(f"\r  {label} [{bar}] {pct:.0f}%", end="", flush=True)
        if current >= total:
            print()


def write_report_csvs(image: MemoryImage, regions: Sequence[Region], slots: Sequence[ChannelSlot],
                      out_dir: Path, config: ReaderConfig = None) -> List[Path]:
    """Write the four mapping CSVs into *out_dir*. Returns the paths written."""
    out_dir.mkdir(parents=True, exist_ok=True)
    zones = CodeplugReport.clean_zone_names(CodeplugReport.find_zone_names(image, regions))
    paths = [out_dir / SLOTS_DEBUG_CSV, out_dir / CHANNEL_FIELDS_CSV,
             out_dir / ZONES_CSV, out_dir / CHANNELS_CSV]
    CodeplugReport.write_slots_debug_csv(image, str(paths[0]), config)
    CodeplugReport.write_channel_fields_csv(slots, str(paths[1]), config)
    CodeplugReport.write_zones_csv(zones, str(paths[2]))
    CodeplugReport.write_channels_csv(slots, str(paths[3]))
    return paths


def print_channel_table(slots: Sequence[ChannelSlot], config: ReaderConfig = None,
                        console: Console = None) -> None:
    cfg = config or ReaderConfig()
    console = console or Console()
    table = Table(title=f"DM-32 channels ({len(slots)})", header_style="bold cyan")
    for col in ("Slot", "Offset", "Name", "Mode", "RX MHz", "TX MHz", "Power", "TS", "CC", "Mon"):
        table.add_column(col, justify="right" if col in ("Slot", "RX MHz", "TX MHz", "TS", "CC") else "left")
    for s in slots:
        table.add_row(
            str((s.slot_base - cfg.slot_base) // cfg.slot_stride), f"0x{s.slot_base:06X}", s.name,
            s.mode.value, f"{s.rx_mhz:.5f}", f"{s.tx_mhz:.5f}", s.power,
            str(s.timeslot), str(s.color_code), "Y" if s.monitor_flag else "-",
        )
    console.print(table)


def config_from_args(args: argparse.Namespace) -> ReaderConfig:
    config = ReaderConfig()
    for arg, attr in (("baud", "baud"), ("retries", "read_attempts"),
                      ("header_budget", "header_sync_budget_ms"),
                      ("chunk_timeout", "payload_timeout_ms"),
                      ("settle", "pulse_settle_ms")):
        value = getattr(args, arg, None)
        if value is not None:
            setattr(config, attr, value)
    return config


def transport_from_args(args: argparse.Namespace, config: ReaderConfig) -> BaseTransport:
    if args.transport == "virtual":
        return VirtualRadioTransport(image_path=getattr(args, "virtual_image", None))
    if args.transport == "d2xx":
        return D2XXTransport(args.device_index or 0, config.baud)
    return PySerialTransport(args.port, config.baud)


def _print_validation(result: ValidationResult) -> None:
    for item in result.missing:
        print(f"  Missing {item}")
    if result.kind == "zones":
        print(f"  Checked {result.checked} zones; radio has {result.radio_zones}; "
              f"channels seen {result.radio_channels}.")
    else:
        print(f"  Checked {result.checked} channels from CSV; radio has ~{result.radio_channels} "
              f"channel-like labels.")
    if result.passed:
        print("✓ Validation PASSED.")
    else:
        print(f"✗ Validation FAILED: {len(result.missing)} missing items.")


def run_cli(args: argparse.Namespace) -> int:
    """Run the CLI interface."""
    print(f"\n{__app_name__} v{__version__}")
    print(f"Target: {__target_radio__}\n")

    if args.command == "ports":
        ports = PySerialTransport.list_ports()
        if ports:
            print("Available ports:")
            for p in ports:
                print(f"  {p}")
        else:
            print("No serial ports found")
        return 0

    config = config_from_args(args)
    try:
        regions = (load_region_map(args.region_map, config.capacity)
                   if getattr(args, "region_map", None) else list(DEFAULT_REGION_MAP))

        # Offline commands: decode a saved image
        image_path = getattr(args, "image", None)
        if args.command in ("parse", "config") or (args.command == "validate" and image_path):
            image = MemoryImage.load(image_path, config.capacity)
            return _run_offline(args, image, regions, config)
    except (FileNotFoundError, ValueError) as e:
        print(f"✗ {e}")
        log.error("CLI input error: %s", e)
        return 1

    transport = transport_from_args(args, config)
    link = RadioLink(transport, config)
    link.on("log", cli_log_callback)
    link.on("progress", cli_progress_callback)

    print("Connecting...")
    if not link.connect():
        print("✗ Connection failed")
        return 1

    try:
        reader = RadioReader(link)
        report = reader.download(regions)
        image = reader.image
        if not report.regions_ok:
            print("\n✗ Download failed: no region could be read")
            return 1

        if args.command == "download":
            out_path = args.output or f"dm32_{datetime.now().strftime('%Y%m%d_%H%M%S')}.img"
            image.save(out_path)
            print(f"\n✓ Saved {image.written_max} bytes to {out_path}")
            for region in report.regions_failed:
                print(f"⚠ Region {region} failed")
            slots = SlotParser(image, config=config).scan()
            if not args.no_csv:
                for p in write_report_csvs(image, regions, slots, Path(args.csv_dir), config):
                    print(f"  Wrote {p}")
            print_channel_table(slots, config)
            return 0

        elif args.command == "validate":
            return _run_offline(args, image, regions, config)

        else:
            print(f"Unknown command: {args.command}")
            return 1

    except KeyboardInterrupt:
        print("\n\nCancelled by user")
        link.cancel()
        return 130
    except (FileNotFoundError, ValueError) as e:
        print(f"\n✗ Error: {e}")
        log.exception("CLI error")
        return 1
    finally:
        link.disconnect()


def _run_offline(args: argparse.Namespace, image: MemoryImage, regions: Sequence[Region],
                 config: ReaderConfig) -> int:
    slots = SlotParser(image, config=config).scan()

    if args.command == "parse":
        print_channel_table(slots, config)
        if args.csv_dir:
            for p in write_report_csvs(image, regions, slots, Path(args.csv_dir), config):
                print(f"  Wrote {p}")
        return 0

    if args.command == "config":
        zones = CodeplugReport.clean_zone_names(CodeplugReport.find_zone_names(image, regions))
        print(CodeplugReport.format_config(image, regions, slots, zones), end="")
        return 0

    if args.command == "validate":
        zones = CodeplugReport.find_zone_names(image, regions)
        result = validate_export(args.csv, slots, zones)
        print(f"Validating {result.kind} CSV against radio...")
        _print_validation(result)
        return 0 if result.passed else 1

    print(f"Unknown command: {args.command}")
    return 1


# ═══════════════════════════════════════════════════════════════════════
# SECTION 14 — ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dm32_reader",
        description=f"{__app_name__} v{__version__} — Baofeng DM-32 codeplug download and decode",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s gui                                        # Launch GUI
  %(prog)s download --port COM3 --output radio.img    # Read radio to image + CSVs
  %(prog)s parse --image radio.img                    # Decode channels offline
  %(prog)s config --image radio.img                   # Region map / channel / zone dump
  %(prog)s validate --image radio.img --csv zones.csv # Check a CPS export
  %(prog)s download --transport virtual --virtual-image radio.img
  %(prog)s ports                                      # List serial ports
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("gui", help="Launch GUI interface")

    download_p = subparsers.add_parser("download", help="Read the radio into an image file")
    download_p.add_argument("--output", "-o", help="Output .img file path")
    download_p.add_argument("--csv-dir", default=".", help="Folder for the mapping CSVs (default: .)")
    download_p.add_argument("--no-csv", action="store_true", help="Skip the mapping CSVs")

    parse_p = subparsers.add_parser("parse", help="Decode channels from a saved image")
    parse_p.add_argument("--image", "-i", required=True, help="Image file from a previous download")
    parse_p.add_argument("--csv-dir", help="Also write the mapping CSVs here")

    config_p = subparsers.add_parser("config", help="Print the decoded configuration of an image")
    config_p.add_argument("--image", "-i", required=True, help="Image file from a previous download")

    validate_p = subparsers.add_parser("validate", help="Check a CPS CSV export against the radio")
    validate_p.add_argument("--csv", "-c", required=True, help="CPS zone or channel export")
    validate_p.add_argument("--image", "-i", help="Use a saved image instead of reading the radio")

    subparsers.add_parser("ports", help="List available serial ports")

    for sub in [download_p, parse_p, config_p, validate_p]:
        sub.add_argument("--region-map", help="JSON region table ([[address, length], ...])")

    for sub in [download_p, validate_p]:
        sub.add_argument("--port", "-p", default="COM3", help="Serial port (default: COM3)")
        sub.add_argument("--baud", type=int, default=DM32_BAUD, help=f"Baud rate (default: {DM32_BAUD})")
        sub.add_argument("--transport", choices=["pyserial", "d2xx", "virtual"],
                         default="pyserial", help="Transport type (virtual = simulated radio)")
        sub.add_argument("--virtual-image", help="Image served by the virtual radio")
        sub.add_argument("--retries", type=int, default=DEFAULT_READ_ATTEMPTS,
                         help=f"Attempts per region (default: {DEFAULT_READ_ATTEMPTS})")
        sub.add_argument("--header-budget", type=int, default=HEADER_SYNC_BUDGET_MS,
                         help=f"Reply header hunt budget in ms (default: {HEADER_SYNC_BUDGET_MS})")
        sub.add_argument("--chunk-timeout", type=int, default=PAYLOAD_TIMEOUT_MS,
                         help=f"Payload read timeout in ms (default: {PAYLOAD_TIMEOUT_MS})")
        sub.add_argument("--settle", type=int, default=PULSE_SETTLE_MS,
                         help=f"Settle time after RTS/DTR pulse in ms (default: {PULSE_SETTLE_MS})")
        sub.add_argument("--device-index", type=int, help="FTDI device index (for D2XX)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        # Default to GUI if available, else show help
        if GUI_AVAILABLE:
            args.command = "gui"
        else:
            parser.print_help()
            return 0

    if args.command == "gui":
        if not GUI_AVAILABLE:
            print(f"ERROR: PySide6 failed to load.")
            print(f"  Python: {sys.executable}")
            print(f"  Error:  {_GUI_IMPORT_ERROR}")
            print(f"")
            print(f"  Install the GUI extra for this interpreter:")
            print(f"    {sys.executable} -m pip install PySide6")
            return 1
        app = QApplication.instance() or QApplication(sys.argv)
        app.setApplicationName(__app_name__)
        window = MainWindow()
        window.show()
        return app.exec()
    else:
        return run_cli(args)


if __name__ == "__main__":
    sys.exit(main())
