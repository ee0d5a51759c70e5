#!/usr/bin/env python3
"""
Serial scanner agent: forwards barcodes read from a serial scanner to the local stock API.

Environment:
  SCANNER_SERIAL_PORT   Serial device of the scanner (default: COM4)
  SCANNER_SERIAL_BAUD   Baud rate (default: 9600)
  SCANNER_POST_URL      Scan endpoint (default: http://127.0.0.1:5000/api/scan)
  SCANNER_DEBOUNCE      Seconds during which a repeat of the same code is ignored (default: 1.0)
  SCANNER_RECONNECT     Seconds to wait before reopening a lost port (default: 5)
  SCANNER_POST_TIMEOUT  Seconds to wait for the scan endpoint (default: 10)
"""
import json
import logging
import time
from typing import Callable, Iterable, Iterator, Optional, Union

import requests
from serial import Serial, SerialException

import stock_config as cfg

logger = logging.getLogger('scanner-agent')


def serial_lines(ser: Serial) -> Iterator[bytes]:
    """Yield raw lines until the port fails; reads that time out yield b''."""
    while True:
        yield ser.readline()


def read_codes(lines: Iterable[Union[bytes, str]], debounce: float = cfg.SCANNER_DEBOUNCE,
               clock: Callable[[], float] = time.monotonic) -> Iterator[str]:
    """Decode scanner lines into barcodes, dropping blanks and quick repeats of the same code."""
    last_code: Optional[str] = None
    last_at = 0.0
    for raw in lines:
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8', errors='replace')
        code = (raw or '').strip()
        if not code:
            continue
        if '\ufffd' in code:
            logger.warning("Dropping garbled scan %r", code)
            continue
        now = clock()
        if code == last_code and now - last_at < debounce:
            logger.debug("Ignoring repeat scan of %s", code)
            continue
        last_code, last_at = code, now
        yield code


def post_code(code: str, url: str = cfg.SCANNER_POST_URL, timeout: float = cfg.SCANNER_POST_TIMEOUT) -> bool:
    try:
        resp = requests.post(url, json={'code': code}, timeout=timeout)
    except requests.RequestException as exc:
        logger.warning("HTTP error posting %s: %s", code, exc)
        return False
    try:
        body = resp.json()
    except json.JSONDecodeError:
        logger.warning("Bad JSON response for %s: status=%s body=%s", code, resp.status_code, resp.text[:200])
        return False
    if not isinstance(body, dict):
        body = {}
    if resp.status_code >= 400:
        logger.warning("Scan %s rejected: status=%s message=%s", code, resp.status_code, body.get('message'))
        return False
    if body.get('status') == 'choose':
        logger.info("Scan %s matched %d products; pick one on screen", code, len(body.get('candidates') or []))
    else:
        logger.info("Staged %s", code)
    return True


def main() -> None:
    cfg.configure_logging('scanner-agent')
    logger.info("Scanner agent reading %s@%s -> %s", cfg.SCANNER_SERIAL_PORT, cfg.SCANNER_SERIAL_BAUD,
                cfg.SCANNER_POST_URL)
    while True:
        try:
            with Serial(cfg.SCANNER_SERIAL_PORT, cfg.SCANNER_SERIAL_BAUD, timeout=1) as ser:
                logger.info("Opened %s", cfg.SCANNER_SERIAL_PORT)
                for code in read_codes(serial_lines(ser)):
                    post_code(code)
        except SerialException as exc:
            logger.warning("Serial error on %s: %s; retrying in %ss", cfg.SCANNER_SERIAL_PORT, exc, cfg.SCANNER_RECONNECT)
            time.sleep(cfg.SCANNER_RECONNECT)
        except KeyboardInterrupt:
            logger.info("Scanner agent stopped")
            return


if __name__ == '__main__':
    main()
