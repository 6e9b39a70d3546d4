#!/usr/bin/env python3
"""
imgcrawl CLI Interface
======================
Starts the crawler and turns stdin into a pause/resume control channel.

Features:
- Resume from any (partial) identifier with -s
- Automatic pause when the download folder outgrows -m megabytes
- 'pause' / 'resume' console commands while running
"""

import argparse
import re
import signal
import sys
import threading

from imgcrawl_core import (
    ImgCrawlCore,
    DEFAULT_MAX_WORKERS,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_QUOTA_MB,
    DEFAULT_SEARCH_LENGTH,
    RECOMMENDED_LENGTH_RANGE,
)

START_STRING_PATTERN = re.compile(r"^[a-zA-Z0-9]*$")

# Levels echoed to the console unless --verbose is given
CONSOLE_LEVELS = ("[SUCCESS]", "[WARNING]", "[ERROR]")

CONSOLE_HELP = (
    "pause - Pauses the application\n"
    "resume - Resumes the application"
)


class CrawlerArgumentParser(argparse.ArgumentParser):
    """ArgumentParser exiting with -1 and the full help on bad arguments."""

    def error(self, message):
        self.print_help(sys.stderr)
        self.exit(-1, f"\n❌ Error: {message}\n")


def _start_string(value: str) -> str:
    if not START_STRING_PATTERN.match(value):
        raise argparse.ArgumentTypeError(f"start string must be alphanumeric: {value!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = CrawlerArgumentParser(
        description="imgcrawl - brute-force image identifier crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        epilog="""
Examples:
  # Crawl 5 character identifiers with 6 threads
  python imgcrawl_cli.py

  # Pick up where a previous run left off
  python imgcrawl_cli.py -s bX3k

  # Longer identifiers, pause once Download/ passes 2GB
  python imgcrawl_cli.py -c 7 -m 2048
        """
    )

    parser.add_argument('-h', '--help', action='help', help='Show this help and exit')
    parser.add_argument('-s', '--start', type=_start_string, default="",
                        help='Forces the procedure to begin at a given string')
    parser.add_argument('-m', '--max-mb', type=int, default=DEFAULT_QUOTA_MB,
                        help=f'In megabytes, the maximum download folder size before automatic '
                             f'pausing (default: {DEFAULT_QUOTA_MB})')
    parser.add_argument('-c', '--chars', type=int, default=DEFAULT_SEARCH_LENGTH,
                        help=f'Number of characters in url string (default: {DEFAULT_SEARCH_LENGTH}), '
                             f'likelihood of finding images decreases dramatically when higher')
    parser.add_argument('-w', '--workers', type=int, default=DEFAULT_MAX_WORKERS,
                        help=f'Max worker threads (default: {DEFAULT_MAX_WORKERS})')
    parser.add_argument('-o', '--output', default=DEFAULT_OUTPUT_DIR,
                        help=f'Output directory (default: {DEFAULT_OUTPUT_DIR})')
    parser.add_argument('-v', '--verbose', action='store_true', help='Show detailed logs')
    return parser


class ImgCrawlCLI:
    """Command-line interface for imgcrawl."""

    def __init__(self, stdin=None, stdout=None):
        self.core = None
        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout if stdout is not None else sys.stdout
        self.printer_stop = threading.Event()
        self.printer_thread = None

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        self._print("\n🛑 Shutdown signal received, stopping...")
        if self.core:
            self.core.stop()
        sys.exit(0)

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _print(self, line: str = ""):
        print(line, file=self.stdout, flush=True)

    def _print_header(self):
        self._print("=" * 70)
        self._print("🔎 imgcrawl - Image Identifier Crawler")
        self._print("=" * 70)
        self._print("Run from command line with /? to view startup args!")

    def _print_logs(self, verbose: bool):
        """Echo core log lines until printer_stop is set."""
        last_log_index = 0
        while True:
            stopping = self.printer_stop.wait(0.25)
            logs, last_log_index = self.core.get_logs(last_log_index)
            for log in logs:
                if verbose or any(level in log for level in CONSOLE_LEVELS):
                    self._print(log)
            if stopping:
                break

    def handle_command(self, command: str):
        """Apply one console command."""
        command = command.strip()
        if command == "pause":
            self.core.pause()
            self._print("PAUSED! Enter 'resume' to continue downloading!")
        elif command == "resume":
            self.core.resume()
            self._print("RESUMED!")
        else:
            self._print(CONSOLE_HELP)

    def _command_loop(self):
        for line in self.stdin:
            self.handle_command(line)

    def run(self, args):
        """Start crawling and serve console commands."""
        self._print_header()

        low, high = RECOMMENDED_LENGTH_RANGE
        if args.chars < low or args.chars > high:
            self._print(f"WARNING: {args.chars} IS LIKELY GOING TO RETURN NO RESULTS!!!")

        self.core = ImgCrawlCore(
            output_dir=args.output,
            search_length=args.chars,
            max_workers=args.workers,
            start_string=args.start,
            quota_mb=args.max_mb,
        )

        self._print(f"Starting at {self.core.start_template} with {len(self.core.assignments)} threads! "
                    f"Enter 'help' to view console commands!")

        self.core.start()

        self.printer_thread = threading.Thread(target=self._print_logs, args=(args.verbose,), daemon=True)
        self.printer_thread.start()

        self._command_loop()

        # stdin closed: run until the keyspace is exhausted or a signal arrives
        self.core.wait()
        self.core.stop()
        self.printer_stop.set()
        self.printer_thread.join(timeout=2)

        stats = self.core.get_stats()
        self._print("=" * 70)
        self._print(f"Identifiers checked: {stats['checked']}")
        self._print(f"Images downloaded: {stats['downloaded']}")
        self._print(f"Failed: {stats['failed']}")
        self._print("=" * 70)


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    # DOS-style help switch
    argv = ["--help" if arg == "/?" else arg for arg in argv]

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.chars < 1 or args.workers < 1:
        parser.error("--chars and --workers must be positive")

    cli = ImgCrawlCLI()
    cli.install_signal_handlers()
    cli.run(args)


if __name__ == "__main__":
    main()
