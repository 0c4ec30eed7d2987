#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""This program downloads the files of a map file through reconnecting http streams."""

import hashlib
import logging
import os
from argparse import ArgumentParser

import yaml

from http_stream import DEFAULT_MAX_RETRIES, HTTPConnector, HTTPStreamError, RetryPolicy, open_http

log = logging.getLogger(__name__)

COPY_BUFSIZE = 1024 * 1024


class remotefile:
    def __init__(self, name, url, proxy=None) -> None:
        self.name = name
        self.url = url
        self.proxy = proxy

    def __repr__(self):
        return f"remotefile({self.name!r}, {self.url!r})"


def load_config(config_path):
    """Read the map file: local file name -> url, or name -> {url, proxy}."""
    with open(config_path, "r") as f:
        config = yaml.load(f, Loader=yaml.FullLoader)
    if not isinstance(config, dict):
        raise ValueError(f"{config_path}: expected a mapping of file names to urls")

    files = []
    for name, entry in config.items():
        name = str(name)
        if not name or name in (".", "..") or "/" in name or os.sep in name:
            raise ValueError(f"{config_path}: invalid file name {name!r}")
        if isinstance(entry, str):
            files.append(remotefile(name, entry))
        elif isinstance(entry, dict) and isinstance(entry.get("url"), str):
            files.append(remotefile(name, entry["url"], entry.get("proxy")))
        else:
            raise ValueError(f"{config_path}: entry {name!r} has no url")
    return files


def download(file, destination, proxy=None, retries=DEFAULT_MAX_RETRIES, connector=None):
    """
    Stream ``file`` into ``destination``/``file.name``.

    Returns the number of bytes written and their sha256 hex digest.
    """
    target = os.path.join(destination, file.name)
    part = target + ".part"
    digest = hashlib.sha256()
    written = 0

    try:
        with open_http(
            file.url,
            "rb",
            proxy=file.proxy or proxy,
            retry_policy=RetryPolicy(max_retries=retries),
            connector=connector,
        ) as src, open(part, "wb") as dst:
            total = src.raw.total_length
            while True:
                chunk = src.read(COPY_BUFSIZE)
                if not chunk:
                    break
                dst.write(chunk)
                digest.update(chunk)
                written += len(chunk)
        if total >= 0 and written != total:
            raise HTTPStreamError(f"{file.url}: got {written} bytes, expected {total}")
    except BaseException:
        if os.path.exists(part):
            os.unlink(part)
        raise
    os.replace(part, target)
    return written, digest.hexdigest()


def init_logging(debug=False):
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)-7s [%(name)s] %(message)s", datefmt="%H:%M:%S"
        )
    )
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.addHandler(handler)
    # request and connection pool chatter only with --debug
    logging.getLogger("http_stream").setLevel(logging.DEBUG if debug else logging.INFO)
    logging.getLogger("urllib3").setLevel(logging.DEBUG if debug else logging.WARNING)
    return handler


def parse_args(argv=None):
    parser = ArgumentParser()
    parser.add_argument(
        "config", type=str, help="the map file of the files to download",
    )
    parser.add_argument("destination", type=str, help="Where to store the files")
    parser.add_argument("--proxy", type=str, default=None, help="Proxy for every connection")
    parser.add_argument(
        "--retries", type=int, default=DEFAULT_MAX_RETRIES,
        help="Reconnects allowed per file (default: %(default)s)",
    )
    parser.add_argument(
        "--timeout", type=float, default=30, help="Connect/read timeout in seconds"
    )
    parser.add_argument(
        "--debug", action="store_true", default=False, help="Enable debugging output"
    )

    return parser.parse_args(argv)


def main(argv=None):
    options = parse_args(argv)
    init_logging(options.debug)

    files = load_config(options.config)
    os.makedirs(options.destination, exist_ok=True)

    failed = 0
    connector = HTTPConnector(timeout=options.timeout)
    try:
        for file in files:
            try:
                size, sha256 = download(
                    file, options.destination, options.proxy, options.retries, connector
                )
            except OSError as e:
                log.error("Failed to download %s: %s", file.name, e)
                failed += 1
                continue
            log.info("%s: %d bytes, sha256 %s", file.name, size, sha256)
    finally:
        connector.close()
    return failed


if __name__ == "__main__":
    raise SystemExit(main())
