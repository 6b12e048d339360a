import threading


class PaymentSweeper:
    """Background thread that purges expired pending/failed payments."""

    def __init__(self, app, interval):
        self.app = app
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="payment-sweeper", daemon=True)
        self._thread.start()
        self.app.logger.info("Payment sweeper started (every %ss)", self.interval)

    def stop(self, timeout=None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def run_once(self):
        with self.app.app_context():
            return self.app.extensions["payment_ledger"].sweep_expired_payments()

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                # Keep the loop alive; the next tick retries
                self.app.logger.exception("Payment sweep failed")
