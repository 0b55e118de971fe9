"""Change-notification listener — LISTEN, reconnect, dispatch.

Learn: The listener is a separate process with two concurrency domains:
1. One control task (NotificationPump) that keeps a dedicated connection
   subscribed via ConnectionSupervisor and pulls events with a bounded wait
2. A fixed pool of worker tasks (TaskDispatcher) that run the handler

The pump never awaits a handler. Slow or failing business logic can fill
the backlog (and get events dropped), but it can't stop us receiving.
ShutdownCoordinator tears both domains down in a bounded time.
"""
