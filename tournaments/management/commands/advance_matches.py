import signal
import threading

from django.conf import settings
from django.core.management.base import BaseCommand

from predictions import lifecycle
from predictions.exceptions import EngineError


class Command(BaseCommand):
    help = 'Starts upcoming matches whose scheduled time has passed, locking their predictions.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--interval', type=float, default=None,
            help='Seconds between sweeps (defaults to MATCH_SWEEP_INTERVAL).',
        )
        parser.add_argument(
            '--once', action='store_true',
            help='Run a single sweep and exit.',
        )

    def handle(self, *args, **options):
        interval = options['interval'] or getattr(settings, 'MATCH_SWEEP_INTERVAL', 5)
        self.stop_event = threading.Event()

        if options['once']:
            self.sweep()
            return

        previous_handlers = {
            sig: signal.signal(sig, self.request_stop) for sig in (signal.SIGINT, signal.SIGTERM)
        }
        self.stdout.write(f'Sweeping for started matches every {interval}s. Press Ctrl+C to stop.')
        try:
            while not self.stop_event.is_set():
                self.sweep()
                self.stop_event.wait(interval)
        finally:
            for sig, handler in previous_handlers.items():
                signal.signal(sig, handler)
        self.stdout.write(self.style.SUCCESS('Match sweeper stopped.'))

    def request_stop(self, signum, frame):
        # The current transition is allowed to finish; the sweep stops before the next one.
        self.stop_event.set()

    def sweep(self):
        try:
            advanced = lifecycle.advance_started_matches(
                should_continue=lambda: not self.stop_event.is_set())
        except EngineError as e:
            self.stderr.write(self.style.ERROR(f'Sweep failed: {e.message}'))
            return []

        if advanced:
            self.stdout.write(self.style.SUCCESS(
                f'Started {len(advanced)} match(es): {", ".join(str(pk) for pk in advanced)}'))
        return advanced
