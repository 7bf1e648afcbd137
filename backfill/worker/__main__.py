from backfill.worker.worker_main import run

run()
