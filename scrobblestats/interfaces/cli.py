import argparse
import asyncio
import json
import logging
import signal
import sys
import time
from typing import List, Optional

from dotenv import load_dotenv

from scrobblestats.application.history import ListeningHistoryService
from scrobblestats.application.statistics import DEFAULT_TOP_N, analyze
from scrobblestats.crosscutting.config import ConfigError, load_settings, missing_env_vars
from scrobblestats.crosscutting.logging import setup_logging
from scrobblestats.crosscutting.metrics import MetricsCollector
from scrobblestats.crosscutting.reporting import create_report, render_text
from scrobblestats.domain.entities import Period
from scrobblestats.domain.errors import ScrobbleStatsError
from scrobblestats.infrastructure.storage import FileFormat, TrackFileStore


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return number


class CLI:
    """Command Line Interface for scrobblestats."""

    def __init__(self):
        """Initialize CLI."""
        self.parser = self._create_parser()
        self._setup_signal_handlers()
        self._start_time = None
        self.metrics = MetricsCollector()

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog='scrobblestats',
            description='Fetch Last.fm listening history and compute listening statistics'
        )
        common = argparse.ArgumentParser(add_help=False)
        common.add_argument(
            '--log-level',
            choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
            default='WARNING',
            help='Set logging level'
        )
        common.add_argument(
            '--env-file',
            default=None,
            help='Read configuration from this .env file'
        )

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        fetch_parser = subparsers.add_parser('fetch', parents=[common], help='Fetch tracks and save them to a file')
        fetch_parser.add_argument(
            '--kind',
            choices=['recent', 'loved', 'top'],
            default='recent',
            help='Which feed to fetch (default: recent)'
        )
        fetch_parser.add_argument(
            '--limit',
            type=_positive_int,
            default=None,
            help='Number of tracks to fetch (default: all)'
        )
        fetch_parser.add_argument(
            '--period',
            choices=[p.value for p in Period],
            default=None,
            help='Time range for top tracks'
        )
        fetch_parser.add_argument(
            '--format',
            choices=[f.value for f in FileFormat],
            default=FileFormat.JSON.value,
            help='Export format (default: json)'
        )
        fetch_parser.add_argument('--data-dir', default=None, help='Directory for exported files')
        fetch_parser.add_argument('--user', default=None, help='Last.fm username (default: LAST_FM_USERNAME)')
        fetch_parser.add_argument('--analyze', action='store_true', help='Print statistics after saving')
        fetch_parser.add_argument('--top', type=int, default=DEFAULT_TOP_N, help='Length of top-N lists')

        analyze_parser = subparsers.add_parser('analyze', parents=[common], help='Analyze an exported file')
        analyze_parser.add_argument('--file', required=True, help='Exported .json or .csv file')
        analyze_parser.add_argument('--top', type=int, default=DEFAULT_TOP_N, help='Length of top-N lists')
        analyze_parser.add_argument('--threshold', type=int, default=0, help='Minimum plays for threshold views')
        analyze_parser.add_argument('--json', action='store_true', help='Print the structured report as JSON')

        now_parser = subparsers.add_parser('now-playing', parents=[common], help='Show the currently playing track')
        now_parser.add_argument('--user', default=None, help='Last.fm username (default: LAST_FM_USERNAME)')
        now_parser.add_argument('--output', default=None, help='Also write the track to this JSON file')

        counts_parser = subparsers.add_parser('play-counts', parents=[common],
                                              help='Export per-track play counts of recent scrobbles')
        counts_parser.add_argument('--limit', type=_positive_int, default=None, help='Number of recent tracks')
        counts_parser.add_argument('--user', default=None, help='Last.fm username (default: LAST_FM_USERNAME)')
        counts_parser.add_argument('--data-dir', default=None, help='Directory for exported files')

        subparsers.add_parser('config', parents=[common], help='Show configuration summary')

        return parser

    def _setup_signal_handlers(self) -> None:
        """Turn SIGTERM into KeyboardInterrupt so running fetches are cancelled."""
        def signal_handler(signum, frame):
            raise KeyboardInterrupt(f"signal {signum}")

        signal.signal(signal.SIGTERM, signal_handler)

    def _cleanup_resources(self) -> None:
        """Log execution time and fetch metrics."""
        logger = logging.getLogger(__name__)
        if self._start_time:
            duration = time.time() - self._start_time
            logger.info(f"CLI execution time: {duration:.2f}s")
        summary = self.metrics.summary()
        if summary['fetches']:
            logger.info(f"Fetch metrics: {summary}")

    def _create_service(self, args: argparse.Namespace) -> ListeningHistoryService:
        settings = load_settings(env_file=args.env_file)
        service = ListeningHistoryService.from_settings(settings, getattr(args, 'user', None), metrics=self.metrics)
        data_dir = getattr(args, 'data_dir', None)
        if data_dir:
            service.store = TrackFileStore(data_dir)
        return service

    def _fetch(self, args: argparse.Namespace) -> None:
        """Fetch a feed and export it."""
        service = self._create_service(args)
        try:
            if args.kind == 'top':
                top_tracks = asyncio.run(service.get_top_tracks(args.limit, args.period))
                for top_track in top_tracks:
                    print(f"{top_track.rank}. {top_track.artist} - {top_track.track} ({top_track.play_count} plays)")
                return

            if args.kind == 'loved':
                tracks = asyncio.run(service.get_loved_tracks(args.limit))
                prefix = 'loved_tracks'
            else:
                tracks = asyncio.run(service.get_recent_tracks(args.limit))
                prefix = 'recent_tracks'
            path = service.store.save(tracks, args.format, prefix)
            print(f"Saved {len(tracks)} tracks to {path}")

            if args.analyze:
                print(render_text(analyze(tracks, top_n=args.top)))
        finally:
            service.close()

    def _analyze(self, args: argparse.Namespace) -> None:
        """Analyze an exported file; no network access."""
        records = TrackFileStore().load(args.file)
        stats = analyze(records, top_n=args.top, threshold=args.threshold)
        if args.json:
            report = create_report(stats, username='', source=str(args.file), record_count=len(records))
            print(json.dumps(report.to_json(), indent=2, ensure_ascii=False))
        else:
            print(render_text(stats))

    def _now_playing(self, args: argparse.Namespace) -> None:
        service = self._create_service(args)
        try:
            if args.output:
                track = asyncio.run(service.update_currently_listening(args.output))
            else:
                track = asyncio.run(service.current_track())
        finally:
            service.close()

        if track:
            print(f"Now playing: {track.identifier}")
        else:
            print("Nothing is playing")

    def _play_counts(self, args: argparse.Namespace) -> None:
        service = self._create_service(args)
        try:
            path = asyncio.run(service.export_recent_play_counts(args.limit))
        finally:
            service.close()
        print(f"Play counts saved to {path}")

    def _show_config(self, args: argparse.Namespace) -> None:
        missing = missing_env_vars()
        if missing and not args.env_file:
            print(f"Missing required environment variables: {', '.join(missing)}")
            sys.exit(1)
        settings = load_settings(env_file=args.env_file)
        for key, value in settings.summary().items():
            print(f"{key}: {value}")

    def run(self, argv: Optional[List[str]] = None) -> None:
        """Run the CLI."""
        self._start_time = time.time()
        logger = logging.getLogger(__name__)

        try:
            args = self.parser.parse_args(argv)

            if not args.command:
                self.parser.print_help()
                sys.exit(1)
            if args.command == 'fetch' and args.period and args.kind != 'top':
                self.parser.error('--period is only valid with --kind top')

            setup_logging(args.log_level)

            commands = {
                'fetch': self._fetch,
                'analyze': self._analyze,
                'now-playing': self._now_playing,
                'play-counts': self._play_counts,
                'config': self._show_config,
            }
            commands[args.command](args)

        except KeyboardInterrupt:
            logger.warning("Operation cancelled by user")
            sys.exit(130)
        except (ScrobbleStatsError, ConfigError) as e:
            logger.error(f"{args.command} failed: {e}")
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        finally:
            self._cleanup_resources()


def main():
    """Main entry point."""
    load_dotenv()
    cli = CLI()
    cli.run()


if __name__ == '__main__':
    main()
