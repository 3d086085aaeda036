#!/usr/bin/env python3
"""Stand-in for libCEC's cec-client console, used by the test-suite.

Accepts the cec-client arguments the adapter passes (and ignores them
except for ``-t`` and ``-a``), prints the same kind of log lines, and
answers a few console commands:

    tx <bytes>   echo as transmitted traffic; reply to a few queries
    q            quit

``--fake-mode`` selects a scenario:

    normal       ready, some noise, then a <Report Physical Address> announce
    port-busy    print a libCEC connection error and exit 1
    silent       never print the ready marker
    crash        close its output, then exit 3 a moment later
"""

import argparse
import os
import sys
import threading
import time

_lock = threading.Lock()
_start = time.monotonic()

_TYPE_TO_ADDRESS = {"x": 0, "r": 1, "t": 3, "p": 4, "a": 5}


def emit(line):
    with _lock:
        sys.stdout.write(line + "\n")
        sys.stdout.flush()


def traffic(direction, payload):
    stamp = int((time.monotonic() - _start) * 1000)
    emit(f"TRAFFIC: [{stamp:14d}]\t{direction} {payload}")


def announce(address, physical):
    traffic(">>", f"{address:x}f:84:{physical[:2]}:{physical[2:]}:{address:02x}")


def reply_to(payload):
    parts = payload.lower().split(":")
    if len(parts) < 2:
        return
    header, opcode = parts[0], parts[1]
    src, dst = header[0], header[1]
    if opcode == "83":
        traffic(">>", f"{dst}f:84:10:00:04")
    elif opcode == "8f":
        traffic(">>", f"{dst}{src}:90:00")
    elif opcode == "9f":
        traffic(">>", f"{dst}{src}:9e:05")


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("-t", default="p")
    parser.add_argument("-a", default="1000")
    parser.add_argument("--fake-mode", default="normal")
    parser.add_argument("--announce-delay-ms", type=int, default=200)
    args, _unknown = parser.parse_known_args()

    emit("opening a connection to the CEC adapter...")

    if args.fake_mode == "port-busy":
        emit("ERROR:   [            12]\tcould not open a connection (try 1)")
        emit("unable to open the device on port RPI")
        return 1

    if args.fake_mode == "crash":
        emit("NOTICE:  [            30]\tconnection opened")
        # stderr shares the pipe with stdout, so both must close for EOF.
        os.close(1)
        os.close(2)
        time.sleep(0.3)
        os._exit(3)

    if args.fake_mode != "silent":
        emit("NOTICE:  [            30]\tconnection opened")
        emit("waiting for input")
        emit("NOTICE:  [            31]\tCEC client registered")
        # A partial traffic line, as seen when the adapter is unplugged mid-frame.
        traffic(">>", "4")
        address = _TYPE_TO_ADDRESS.get(args.t, 4)
        timer = threading.Timer(
            args.announce_delay_ms / 1000.0, announce, args=(address, args.a),
        )
        timer.daemon = True
        timer.start()

    for line in sys.stdin:
        command = line.strip()
        if command == "q":
            emit("NOTICE:  [          9999]\tclosing the connection")
            break
        if command.startswith("tx "):
            payload = command[3:].strip()
            traffic("<<", payload)
            reply_to(payload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
