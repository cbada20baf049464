# zwappliance

Runtime pieces for a small networked appliance:

- a layered JSON configuration: a system base file plus a live file that holds
  only the changes from it;
- a minimal HTTP request/response model with a wildcard router that is also a
  WSGI application;
- a static file handler with ETag revalidation and captive-portal redirection
  while the appliance is being provisioned;
- a WebDAV handler that exposes a directory tree under `/.fs`.

It has no dependencies beyond the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Configuration

The configuration is a JSON document. Every field is optional; anything absent
keeps its default.

```json
{
  "wifi": {
    "power_saving": false,
    "ap": {"ssid_prefix": "ZWAppliance-", "password": "password", "net_provision_only": true},
    "station": {"ssid": "HomeNetwork", "password": "password"}
  },
  "time": {"baseline": "2024-01-01 00:00:00", "timezone": "UTC0", "ntp_server": "pool.ntp.org"},
  "dev_mode": {"web_dav": true},
  "http_server": {
    "root_dir": "/srv/www",
    "net_provision": {"enabled": true, "default_page": "/provision.html"},
    "web_ota": {"enabled": false, "netmask": "255.255.255.0"}
  }
}
```

`zwappliance.config_model` holds the model (`AppConfig` and its sections
`Wifi`, `WifiAp`, `WifiStation`, `TimeConfig`, `DevMode`, `HttpServerConfig`,
`NetProvision`, `WebOTA`) together with `parse_app_config`, which overlays JSON
onto a config, and `marshal_app_config`, which returns only the fields that
differ between two configs (or `None` when they are the same). Malformed
values are skipped unless `strict=True`, in which case `ConfigError` is
raised and the config is left as it was.

`zwappliance.config_store.ConfigStore` keeps the live configuration:

```python
from zwappliance.config_store import ConfigStore, describe_config

store = ConfigStore("/mnt/system", "/mnt/storage")
store.load()             # <system>/config/base.json, then <storage>/app_config.json

with store.access() as config:
    config.time.timezone = "CET-1CEST,M3.5.0,M10.5.0/3"
    print("\n".join(describe_config(config)))

store.persist()          # writes only the differences from the base file
```

A missing or unreadable live file is ignored when loading, so clearing the
storage directory returns the appliance to its base configuration.
Application-specific top-level fields can be added with
`ConfigStore.register_field` and a `FieldHandler` (parse, describe and marshal
hooks).

## HTTP handlers

`zwappliance.http_core` provides `Request`, `Response`, `ServingConfig`,
`query_parse_param`, `receive_json` and `Router`. Routes are tried in the order
they were registered, so register the catch-all file handler last:

```python
from wsgiref.simple_server import make_server

from zwappliance.config_store import ConfigStore
from zwappliance.fileserv import register_handler_fileserv
from zwappliance.http_core import Router, ServingConfig
from zwappliance.webdav import register_handler_webdav

store = ConfigStore("/mnt/system", "/mnt/storage")
config = store.load()

router = Router()
if config.dev_mode.web_dav:
    register_handler_webdav(router, "/mnt/storage")
register_handler_fileserv(router, ServingConfig(httpd=config.http_server))

make_server("", 8080, router).serve_forever()
```

| Path | Handler | Purpose |
| --- | --- | --- |
| `/*` | `fileserv.FileServer` | files under `http_server.root_dir`; `index.html` for directories; `304` on a matching `If-None-Match` |
| `/.fs/...` | `webdav.DAVHandler` | GET, HEAD, PUT, DELETE, MKCOL, COPY, MOVE, OPTIONS, PROPFIND (depth 0 or 1) and PROPPATCH (always refused) |

While `ServingConfig.provisioning` is set, `FileServer` redirects requests
for any host other than its `hostname` to that host, and redirects `/` to
`net_provision.default_page` when one is configured.

## What the package does not do

The package has no command-line program and no server of its own: you pick a
WSGI server and wire the handlers to it as shown above. It does not manage
Wi-Fi, answer DNS, keep system state flags or events, offer system-management
endpoints (reboot, storage dump and restore, configuration sections over HTTP)
or apply firmware updates. The `wifi` and `web_ota` configuration sections are
stored, described and persisted, but nothing in the package acts on them.