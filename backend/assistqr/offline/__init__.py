"""
AssistQR Offline Client
=========================

The bystander-side half of the pipeline:

    queue.py     LocalQueue, durable SQLite storage for unsent reports
    sync.py      SyncEngine and ConnectivityMonitor, which drain the queue
    reporter.py  OfflineReporter, which submits directly or queues

Typical wiring:

    queue = LocalQueue()
    await queue.init()
    engine = SyncEngine(queue)
    monitor = ConnectivityMonitor(engine)
    monitor.start()
    reporter = OfflineReporter(queue, engine)
    result = await reporter.submit(draft, images)
"""
