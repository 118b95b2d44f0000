# userservers

A small supervisor for services that belong to one user. A daemon,
`userserversd`, keeps a list of services, starts them when it comes up,
collects their output and stops them when it is asked to quit. A client,
`userserversctl`, talks to the daemon over a Unix socket to add, remove,
edit, start, stop, restart and inspect services.

It runs on POSIX systems and needs nothing beyond the Python standard
library (Python 3.10 or later).

## Installation

```
pip install .
```

## Running the daemon

```
userserversd
```

The daemon takes no arguments.

**Socket.** It picks the first of `/run`, `/var/run` and `/tmp` that
exists, creates `<dir>/user/<uid>/` under it and listens on
`<dir>/user/<uid>/userserversd.sock`. If that directory cannot be
created, it uses `<dir>/userserversd.sock` instead. The client finds the
socket the same way. If a socket file is already there (for example after
a crash), binding fails and the daemon exits with status 1; remove the
stale file first.

**Shutdown.** On `SIGINT` or `SIGTERM` it stops every running service,
removes the socket file and exits with status 0.

**Service list.** On start-up the daemon reads its service list and
starts every service in it. The list is written back whenever a service
is added or removed. It is stored as JSON in:

- `$XDG_CONFIG_HOME/userserversd_services.json` when `XDG_CONFIG_HOME`
  is set;
- otherwise `~/.userserversd_services.json` if that file already exists
  or there is no `~/.config` directory;
- otherwise `~/.config/userserversd_services.json`.

If `HOME` is unset, the home directory is taken to be `/home/<user>`.
A missing file means an empty list; a file that cannot be read or parsed
is reported on standard output and ignored.

The file maps each service name to its settings:

```json
{
  "web": {
    "working_directory": "/srv/site",
    "environment": {},
    "group": "web",
    "kind": {"Synchronous": {"command": ["python3", "-m", "http.server", "8000"]}}
  },
  "db": {
    "working_directory": "/home/alice",
    "environment": {"PGDATA": "/srv/db"},
    "group": null,
    "kind": {"Asynchronous": {"start_command": ["pg_ctl", "start"],
                              "stop_command": ["pg_ctl", "stop"]}}
  }
}
```

## Kinds of service

- **Synchronous**: one command that keeps running. The service counts as
  running while that process is alive. To stop it the daemon sends
  `SIGTERM` and waits up to 30 seconds, trying up to five times, then
  sends `SIGKILL`.
- **Asynchronous**: a start command and a stop command, each run to
  completion, for programs that detach by themselves. The service counts
  as running from the moment its start command finishes until its stop
  command finishes; the daemon does not watch the detached program.

Every command runs in the service's working directory with the daemon's
environment plus the service's overrides, with standard input from
`/dev/null`. Its standard output and standard error are collected into the
service's log, which `userserversctl status` shows.

## Using the client

```
userserversctl add sync web '["python3", "-m", "http.server", "8000"]' -w /srv/site -g web
userserversctl add async db '["pg_ctl", "start"]' '["pg_ctl", "stop"]' -e '{"PGDATA": "/srv/db"}'
userserversctl status web
userserversctl list-services
userserversctl edit sync web --command '["python3", "-m", "http.server", "9000"]'
userserversctl restart web
userserversctl stop web
userserversctl start web
userserversctl remove web
userserversctl help
```

Commands are JSON arrays with one item for each argument; environments
are JSON maps of strings.

| Subcommand                                   | What it does                                                   |
|----------------------------------------------|----------------------------------------------------------------|
| `add sync <NAME> <COMMAND>`                  | add and start a synchronous service                            |
| `add async <NAME> <START> <STOP>`            | add and start an asynchronous service                          |
| `edit sync <NAME>` / `edit async <NAME>`     | change a service: removes it and adds it again with new values |
| `remove <NAME>`                              | stop the service if it runs, and forget it                     |
| `start` / `stop` / `restart <NAME>`          | start, stop or restart a service                               |
| `status <NAME>`                              | show the settings, whether it runs, and the collected log      |
| `list-services`                              | a table of all services, one section per group                 |
| `help`                                       | print the help text                                            |

Options for `add` and `edit`:

| Short | Long                  | Meaning                                                   |
|-------|-----------------------|-----------------------------------------------------------|
| `-w`  | `--working-directory` | working directory; for `add` your home by default         |
| `-e`  | `--environment`       | JSON map of environment variables to override             |
| `-g`  | `--group`             | group the service is listed under (`none` if not given)   |
| `-n`  | `--name`              | new name (`edit` only)                                    |
| `-c`  | `--command`           | new command (`edit sync` only)                            |
| `-st` | `--start-command`     | new start command (`edit async` only)                     |
| `-sp` | `--stop-command`      | new stop command (`edit async` only)                      |

Every option takes one argument. Options come after the positional
arguments of the subcommand. `edit` keeps any setting that is not given.

The client exits with status 0 and prints `Command executed
successfully!` when the daemon accepts the command. It exits with status 1
when the command line is wrong (after printing the help), when the
socket cannot be reached, when the JSON given is invalid, or when the
daemon answers `ServiceAlreadyExists` or `ServiceDoesNotExist`.

## Using it from Python

- `userservers.service_manager.ServiceManager(config_path=None)` holds the
  services and saves them to `config_path` (or the default location
  above). Its methods `add_synchronous`, `add_asynchronous`, `remove`,
  `start`, `stop`, `restart`, `stop_all`, `get_status` and
  `list_services` are safe to call from several threads; a missing or
  duplicate name raises `CommandFailed`, whose `status` is a
  `ResponseStatus`.
- `userservers.service.Service` is one service with `start()`, `stop()`,
  `restart()`, `is_running()` and `logs()`; it raises
  `ServiceAlreadyRunning`, `ServiceNotRunning` or `ServiceError`.
- `userservers.ctl.Client(socket_path=None)` sends commands from
  `userservers.ipc` to a running daemon with `run()` and returns the
  `Response`; it raises `CtlError` on failure and works as a context
  manager.
- `userservers.ipc` defines the messages and their wire format: JSON
  followed by a single `0xFF` byte (`encode_command`, `decode_command`,
  `encode_response`, `decode_response`, `read_command`, `write_command`,
  `read_response`, `write_response`, `get_socket_path`).
- `userservers.daemon.serve(socket_path, manager)` serves a manager on a
  socket of your choice.
- `userservers.flag` is the small command-line parser the client uses
  (`Command`, `parse`, `ParseError`).

## What it does not do

- A synchronous service that exits is not restarted; it simply shows as
  not running.
- Logs are kept in the daemon's memory only, without a size limit, and
  are lost when the daemon exits.
- A service that fails to start is reported only in the daemon's output;
  the client still reports success.
- There is no authentication on the socket beyond its file permissions.

## Tests

```
pip install .[test]
pytest
```