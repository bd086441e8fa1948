#!/usr/bin/env python3
"""
virtual_dm32_radio.py — Standalone Virtual DM-32 + Frame Sender
=================================================================

A standalone TCP/serial bridge that acts as a Baofeng DM-32 in programming
mode. Listens on a TCP socket and answers the CPS wake-up traffic and
``R`` block reads the way the radio does, serving bytes from a saved image.

Useful for:
    - Testing dm32_reader without a radio attached
    - Replaying a saved .img to another tool over a virtual COM port
    - Sending arbitrary frames to a real DM-32 and watching the reply

The virtual radio loads an image (2 MiB max, 0xFF where absent) and answers:
    - PSEARCH / PASSSTA / SYSINFO  discovery strings
    - 56 00 00 40 0D / 56 00 00 00 i  version probes
    - 47 00 00 00 00 01  resource probe
    - FF FF FF FF 0C PROGRAM  enter program mode (ACK)
    - 02 / 06  STX / ACK
    - 52 A2 A1 A0 Llo Lhi  block read (program mode only)

Usage:
    # Start the virtual radio on a TCP port (bridge it to a PTY / COM port)
    python virtual_dm32_radio.py --mode radio --port 4032 --img radio.img

    # Send a raw frame to a real radio
    python virtual_dm32_radio.py --mode send --serial COM3 --frame "50 53 45 41 52 43 48"

    # Interactive frame sender (type frames, see responses)
    python virtual_dm32_radio.py --mode interactive --serial COM3

Target: Baofeng DM-32, CH340 cable, 115200 8N1

MIT License — Copyright (c) 2026 Jason King (pcmhacking.net: kingaustraliagg)
"""

from __future__ import annotations
import sys
import time
import socket
import argparse
from pathlib import Path

# ═══════════════════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════════════════

DM32_BAUD = 115200
MEMSZ = 0x200000  # 2 MiB

# Opcodes
OP_VERSION = 0x56
OP_RESOURCE = 0x47
OP_READ = 0x52
OP_READ_REPLY = 0x57
OP_STX = 0x02
OP_ACK = 0x06

PROGRAM_PREAMBLE = b"\xFF\xFF\xFF\xFF\x0C" + b"PROGRAM"
VERSION_PROBE = bytes([OP_VERSION, 0x00, 0x00, 0x40, 0x0D])
RESOURCE_PROBE = bytes([OP_RESOURCE, 0x00, 0x00, 0x00, 0x00, 0x01])

DISCOVERY_REPLIES = {
    b"PSEARCH": b"\x06DM-32UV",
    b"PASSSTA": b"\x50\x00\x00",
    b"SYSINFO": b"\x06",
}
VERSION_REPLY = VERSION_PROBE + b"DM32.01.01.038"
RESOURCE_REPLY = RESOURCE_PROBE + b"\x00"
STX_REPLY = b"DM32\x00\x00\x00\x00"

# Fixed frame sizes keyed by first byte
FRAME_SIZES = {
    OP_VERSION: 5,
    OP_RESOURCE: 6,
    OP_READ: 6,
    OP_STX: 1,
    OP_ACK: 1,
    0xFF: len(PROGRAM_PREAMBLE),
    ord("P"): 7,
    ord("S"): 7,
}


# ═══════════════════════════════════════════════════════════════════════
# PROTOCOL HELPERS
# ═══════════════════════════════════════════════════════════════════════

def build_read_request(address: int, length: int) -> bytes:
    """52 A2 A1 A0 Llo Lhi"""
    return bytes([OP_READ, (address >> 16) & 0xFF, (address >> 8) & 0xFF, address & 0xFF,
                  length & 0xFF, (length >> 8) & 0xFF])


def frame_length(buf: bytes) -> int | None:
    """
    Length of the frame at the start of *buf*.

    None means more bytes are needed; 0 means the first byte starts no
    known frame and should be dropped.
    """
    if not buf:
        return None
    size = FRAME_SIZES.get(buf[0])
    if size is None:
        return 0
    if len(buf) < size:
        return None
    frame = bytes(buf[:size])
    if size == 7 and frame not in DISCOVERY_REPLIES:
        return 0
    if buf[0] == 0xFF and frame != PROGRAM_PREAMBLE:
        return 0
    return size


def hex_str(data: bytes) -> str:
    """Format bytes as hex string."""
    return ' '.join(f'{b:02X}' for b in data)


# ═══════════════════════════════════════════════════════════════════════
# VIRTUAL RADIO
# ═══════════════════════════════════════════════════════════════════════

class VirtualDM32:
    """
    Simulates a DM-32 during a CPS read.

    Loads a saved image as its memory and answers frames with the
    bytes the real radio sends back. Reads only work after PROGRAM.
    """

    def __init__(self, img_path: str | None = None):
        self.memory = bytearray(b"\xFF" * MEMSZ)
        self.in_program = False
        self.reads = 0

        if img_path and Path(img_path).exists():
            data = Path(img_path).read_bytes()[:MEMSZ]
            self.memory[:len(data)] = data
            print(f"[vDM32] Loaded {len(data)} bytes from {Path(img_path).name}")
        else:
            print("[vDM32] Running with blank memory (all 0xFF)")

    def process_frame(self, frame: bytes) -> bytes | None:
        """Route one complete frame to its handler and return the reply."""
        if not frame:
            return None

        if frame in DISCOVERY_REPLIES:
            return DISCOVERY_REPLIES[frame]
        if frame == PROGRAM_PREAMBLE:
            self.in_program = True
            print("[vDM32] Entered program mode")
            return bytes([OP_ACK])

        op = frame[0]
        if op == OP_VERSION and len(frame) == 5:
            return VERSION_REPLY if frame == VERSION_PROBE else frame[:4] + b"\x00"
        elif op == OP_RESOURCE and frame == RESOURCE_PROBE:
            return RESOURCE_REPLY
        elif op == OP_STX and len(frame) == 1:
            return STX_REPLY
        elif op == OP_ACK and len(frame) == 1:
            return bytes([OP_ACK])
        elif op == OP_READ and len(frame) == 6:
            return self._handle_read(frame)
        print(f"[vDM32] Unknown frame: {hex_str(frame[:16])}")
        return None

    def _handle_read(self, frame: bytes) -> bytes | None:
        """Serve a block read from memory; silent outside program mode."""
        address = (frame[1] << 16) | (frame[2] << 8) | frame[3]
        length = frame[4] | (frame[5] << 8)
        if not self.in_program:
            print(f"[vDM32] Read 0x{address:06X}+{length} ignored (not in program mode)")
            return None
        self.reads += 1
        payload = bytes(self.memory[address:address + length])
        payload += b"\xFF" * (length - len(payload))
        print(f"[vDM32] Read 0x{address:06X}+{length}: {hex_str(payload[:16])}...")
        return bytes([OP_READ_REPLY]) + frame[1:] + payload


# ═══════════════════════════════════════════════════════════════════════
# TCP SERVER (for radio mode)
# ═══════════════════════════════════════════════════════════════════════

def run_radio_tcp(radio: VirtualDM32, host: str = "127.0.0.1", port: int = 4032):
    """Run the virtual radio as a TCP server."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind((host, port))
    server.listen(1)
    print(f"[vDM32] TCP server listening on {host}:{port}")
    print(f"[vDM32] Connect with: socat PTY,link=/dev/ttyDM32,raw TCP:{host}:{port}")
    print(f"[vDM32] Or use a virtual COM port bridge on Windows")

    try:
        while True:
            conn, addr = server.accept()
            print(f"[vDM32] Client connected from {addr}")
            handle_client(radio, conn)
    except KeyboardInterrupt:
        print("\n[vDM32] Shutting down")
    finally:
        server.close()


def handle_client(radio: VirtualDM32, conn: socket.socket):
    """Handle a single client connection."""
    buf = bytearray()
    try:
        while True:
            data = conn.recv(1024)
            if not data:
                break
            buf.extend(data)

            while buf:
                size = frame_length(buf)
                if size is None:
                    break  # need more data
                if size == 0:
                    buf.pop(0)  # discard stray byte
                    continue

                frame = bytes(buf[:size])
                del buf[:size]
                print(f"[vDM32] RX: {hex_str(frame[:16])}")

                resp = radio.process_frame(frame)
                if resp:
                    conn.sendall(resp)
                    print(f"[vDM32] TX: {hex_str(resp[:16])}{'...' if len(resp) > 16 else ''}")
    except (ConnectionResetError, BrokenPipeError):
        print("[vDM32] Client disconnected")
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# FRAME SENDER (for sending raw frames to a real radio)
# ═══════════════════════════════════════════════════════════════════════

def send_frame(serial_port, frame_hex: str, baud: int = DM32_BAUD):
    """Send raw bytes to a real DM-32 and display whatever comes back."""
    try:
        import serial
    except ImportError:
        print("ERROR: pyserial not installed. Run: pip install pyserial")
        sys.exit(1)

    hex_clean = frame_hex.replace(',', ' ').replace('0x', '').strip()
    tx_data = bytes.fromhex(hex_clean.replace(' ', ''))
    if not tx_data:
        print("  Nothing to send")
        return

    print(f"  TX: {hex_str(tx_data)}")

    ser = serial.Serial(
        port=serial_port,
        baudrate=baud,
        bytesize=serial.EIGHTBITS,
        parity=serial.PARITY_NONE,
        stopbits=serial.STOPBITS_ONE,
        timeout=0.5,
    )

    try:
        ser.reset_input_buffer()
        ser.write(tx_data)
        ser.flush()

        time.sleep(0.15)
        resp = ser.read(4096)
        if resp:
            print(f"  RX ({len(resp)} bytes): {hex_str(resp[:64])}{' ...' if len(resp) > 64 else ''}")
            text = ''.join(chr(b) if 0x20 <= b <= 0x7E else '.' for b in resp[:64])
            print(f"  ASCII: {text}")
        else:
            print(f"  No response (timeout)")
    finally:
        ser.close()


def interactive_mode(serial_port: str, baud: int = DM32_BAUD):
    """Interactive DM-32 frame sender — type hex, see responses."""
    print(f"DM-32 Interactive Frame Sender")
    print(f"  Port: {serial_port} @ {baud} baud")
    print(f"  Type hex bytes separated by spaces (e.g., 56 00 00 40 0D)")
    print(f"  Built-in shortcuts:")
    print(f"    psearch        → PSEARCH discovery")
    print(f"    version        → 56 00 00 40 0D")
    print(f"    program        → FF FF FF FF 0C PROGRAM")
    print(f"    read ADDR LEN  → R block read (hex address, decimal length)")
    print(f"    quit           → Exit")
    print()

    shortcuts = {
        'psearch': hex_str(b"PSEARCH"),
        'passsta': hex_str(b"PASSSTA"),
        'sysinfo': hex_str(b"SYSINFO"),
        'version': hex_str(VERSION_PROBE),
        'program': hex_str(PROGRAM_PREAMBLE),
    }

    while True:
        try:
            line = input("DM32> ").strip()
        except (EOFError, KeyboardInterrupt):
            break

        if not line or line.lower() == 'quit':
            break

        if line.lower() in shortcuts:
            line = shortcuts[line.lower()]
        elif line.lower().startswith('read '):
            parts = line.split()
            addr = int(parts[1], 16)
            length = int(parts[2]) if len(parts) > 2 else 16
            line = hex_str(build_read_request(addr, length))

        send_frame(serial_port, line, baud)
        print()


# ═══════════════════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(
        description="Virtual DM-32 + Frame Sender",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Modes:
  radio        Run as a virtual DM-32 (TCP server)
  send         Send a single raw frame to a real radio
  interactive  Interactive frame sender

Examples:
  # Serve a saved image
  python virtual_dm32_radio.py --mode radio --img radio.img

  # Send PSEARCH to a real radio on COM3
  python virtual_dm32_radio.py --mode send --serial COM3 --frame "50 53 45 41 52 43 48"

  # Interactive mode
  python virtual_dm32_radio.py --mode interactive --serial COM3
        """,
    )
    parser.add_argument("--mode", choices=["radio", "send", "interactive"],
                        default="radio", help="Operating mode (default: radio)")
    parser.add_argument("--serial", type=str, default="COM3",
                        help="Serial port for send/interactive modes")
    parser.add_argument("--baud", type=int, default=DM32_BAUD,
                        help=f"Baud rate (default: {DM32_BAUD})")
    parser.add_argument("--host", type=str, default="127.0.0.1",
                        help="TCP host for radio mode (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=4032,
                        help="TCP port for radio mode (default: 4032)")
    parser.add_argument("--img", type=str, default=None,
                        help="Saved image to serve as radio memory")
    parser.add_argument("--frame", type=str, default=None,
                        help="Hex bytes to send (for send mode)")
    args = parser.parse_args()

    if args.mode == "radio":
        radio = VirtualDM32(img_path=args.img)
        run_radio_tcp(radio, args.host, args.port)

    elif args.mode == "send":
        if not args.frame:
            print("ERROR: --frame is required for send mode")
            sys.exit(1)
        send_frame(args.serial, args.frame, args.baud)

    elif args.mode == "interactive":
        interactive_mode(args.serial, args.baud)


if __name__ == "__main__":
    main()
