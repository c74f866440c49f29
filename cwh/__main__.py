import asyncio
import sys

from hypercorn.asyncio import serve
from hypercorn.config import Config

import cwh.api
import cwh.logstreams

if __name__ == "__main__":  # codecov-skip
    cfg, err = cwh.api.compile_server_config()
    if err:
        print("invalid server configuration")
        sys.exit(1)

    try:
        cwh.logstreams.setup(cfg.loglevel)
        hypercorn_cfg = Config()
        hypercorn_cfg.bind = [f"{cfg.host}:{cfg.port}"]
        if cfg.tls_cert != "" and cfg.tls_key != "":
            hypercorn_cfg.certfile = cfg.tls_cert
            hypercorn_cfg.keyfile = cfg.tls_key
        asyncio.run(serve(cwh.api.make_app(), hypercorn_cfg))  # type: ignore
    except KeyboardInterrupt:
        print("User abort")
        sys.exit(1)
