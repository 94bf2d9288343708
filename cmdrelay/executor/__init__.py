"""Executor side of the relay: a long-running client that polls for commands and runs them.

- `client.RelayClient`: HTTP wrapper around the `/api/v1/executor/*` routes.
- `shell`: run one command on the host or inside a Docker container.
- `runner.ExecutorRunner`: connect / heartbeat / poll / execute / report loop.
"""
