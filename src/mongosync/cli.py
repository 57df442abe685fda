"""
mongosync 命令行

用法:
    mongosync --src_srv 10.0.0.1:27017 --dst_srv 10.0.0.2:27017 --db foo --oplog
    mongosync --src_srv a:27017 --dst_srv b:27017 --db foo --coll bar --dst_coll baz
    mongosync --src_srv a:27017 --dst_srv b:27017 --raw_oplog --oplog_start 1700000000,1
"""
import argparse
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from bson import json_util
from pydantic import ValidationError

from . import __version__
from .api.main import create_app, serve_in_background
from .config.settings import Settings, settings as default_settings
from .data_models.base import ConfigurationError, MongoSyncError, VersionUnsupportedError
from .data_models.options import DEFAULT_DST_OPLOG_NS, Options
from .replication.engine import MongoSync


logger = logging.getLogger(__name__)


def configure_logging(level: str, fmt: str):
    """配置根日志"""
    logging.basicConfig(level=level.upper(), format=fmt, force=True)
    # 驱动的心跳日志过多
    logging.getLogger("pymongo").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mongosync",
        description="Clone MongoDB databases/collections and replay the oplog onto another deployment",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    src = parser.add_argument_group("source")
    src.add_argument("--src_srv", default="", help="source host:port")
    src.add_argument("--src_user", default="")
    src.add_argument("--src_passwd", default="")
    src.add_argument("--src_auth_db", default="admin")
    src.add_argument("--src_use_mcr", action="store_true",
                     help="use the legacy challenge-response mechanism (SCRAM-SHA-1)")

    dst = parser.add_argument_group("destination")
    dst.add_argument("--dst_srv", default="", help="destination host:port")
    dst.add_argument("--dst_user", default="")
    dst.add_argument("--dst_passwd", default="")
    dst.add_argument("--dst_auth_db", default="admin")
    dst.add_argument("--dst_use_mcr", action="store_true")

    scope = parser.add_argument_group("scope")
    scope.add_argument("--db", default="", help="database to sync, empty means all")
    scope.add_argument("--dst_db", default="", help="destination database name, defaults to --db")
    scope.add_argument("--coll", default="", help="collection to sync (requires --db)")
    scope.add_argument("--dst_coll", default="", help="destination collection name, defaults to --coll")
    scope.add_argument("--filter", default="",
                       help="query document in extended JSON applied to cloned and inserted documents")
    scope.add_argument("--no_index", action="store_true", help="do not copy indexes")

    oplog = parser.add_argument_group("oplog")
    oplog.add_argument("--oplog", action="store_true", help="replay the oplog after cloning")
    oplog.add_argument("--raw_oplog", action="store_true",
                       help="copy oplog entries verbatim instead of applying them")
    oplog.add_argument("--dst_oplog_ns", default=DEFAULT_DST_OPLOG_NS,
                       help="destination namespace for --raw_oplog")
    oplog.add_argument("--oplog_start", default="", help="first position, inclusive (sec,no)")
    oplog.add_argument("--oplog_end", default="", help="last position, inclusive (sec,no)")

    runtime = parser.add_argument_group("runtime")
    runtime.add_argument("--workers", type=int, default=None, help="number of writer threads")
    runtime.add_argument("--log_level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    runtime.add_argument("--status_port", type=int, default=None,
                         help="serve /health, /status and /metrics on this port")
    return parser


def parse_filter(text: str) -> Dict[str, Any]:
    """解析扩展JSON格式的过滤条件"""
    if not text:
        return {}
    try:
        value = json_util.loads(text)
    except ValueError as e:
        raise ConfigurationError(f"Invalid --filter: {e}")
    if not isinstance(value, dict):
        raise ConfigurationError("--filter must be a JSON object")
    return value


def options_from_args(args: argparse.Namespace) -> Options:
    """命令行参数 -> Options"""
    try:
        return Options(
            src_srv=args.src_srv,
            src_user=args.src_user,
            src_passwd=args.src_passwd,
            src_auth_db=args.src_auth_db,
            src_use_mcr=args.src_use_mcr,
            dst_srv=args.dst_srv,
            dst_user=args.dst_user,
            dst_passwd=args.dst_passwd,
            dst_auth_db=args.dst_auth_db,
            dst_use_mcr=args.dst_use_mcr,
            db=args.db,
            dst_db=args.dst_db,
            coll=args.coll,
            dst_coll=args.dst_coll,
            oplog=args.oplog,
            raw_oplog=args.raw_oplog,
            dst_oplog_ns=args.dst_oplog_ns,
            oplog_start=args.oplog_start,
            oplog_end=args.oplog_end,
            no_index=args.no_index,
            filter=parse_filter(args.filter),
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid options: {e}")


def runtime_settings(args: argparse.Namespace, base: Settings) -> Settings:
    """用命令行参数覆盖运行配置"""
    sync = base.sync
    if args.workers is not None:
        if args.workers < 1:
            raise ConfigurationError("--workers must be at least 1")
        sync = sync.model_copy(update={"writer_threads": args.workers})

    monitoring = base.monitoring
    if args.status_port is not None:
        monitoring = monitoring.model_copy(update={"status_port": args.status_port})

    log = base.logging
    if args.log_level:
        log = log.model_copy(update={"level": args.log_level})

    return base.model_copy(update={"sync": sync, "monitoring": monitoring, "logging": log})


def install_signal_handlers(engine: MongoSync):
    """SIGINT/SIGTERM 请求优雅停止，第二次信号直接退出"""
    def handler(signum, frame):
        if engine.stopped:
            logger.warning("Received signal %d again, exiting immediately", signum)
            raise SystemExit(130)
        logger.warning("Received signal %d, stopping after the current batch", signum)
        engine.stop()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def print_failure(error: MongoSyncError):
    """失败摘要"""
    print(f"❌ mongosync failed: {error.message}", file=sys.stderr)
    if error.error_code:
        print(f"   error code: {error.error_code}", file=sys.stderr)
    print(f"   phase:      {error.phase or '-'}", file=sys.stderr)
    print(f"   namespace:  {error.namespace or '-'}", file=sys.stderr)
    print(f"   position:   {error.position if error.position is not None else '-'}", file=sys.stderr)
    if isinstance(error, VersionUnsupportedError):
        print(f"   src version: MongoDB {error.src_version or 'unknown'}", file=sys.stderr)
        print(f"   dst version: MongoDB {error.dst_version or 'unknown'}", file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        run_settings = runtime_settings(args, default_settings)
    except ConfigurationError as e:
        print_failure(e)
        return 2
    configure_logging(run_settings.logging.level, run_settings.logging.format)

    try:
        opt = options_from_args(args)
    except ConfigurationError as e:
        print_failure(e)
        return 2

    holder: Dict[str, Optional[MongoSync]] = {"engine": None}
    monitoring = run_settings.monitoring
    if monitoring.status_port:
        app = create_app(lambda: holder["engine"])
        serve_in_background(app, monitoring.status_host, monitoring.status_port)
        logger.info("Status server listening on %s:%d", monitoring.status_host, monitoring.status_port)

    print(f"🚀 mongosync {__version__}: {opt.src_srv} -> {opt.dst_srv}")
    sync = None
    try:
        sync = MongoSync.new(opt, settings=run_settings)
        holder["engine"] = sync
        install_signal_handlers(sync)
        sync.process()
    except ConfigurationError as e:
        print_failure(e)
        return 2
    except MongoSyncError as e:
        print_failure(e)
        return 1
    finally:
        if sync is not None:
            sync.close()

    status = sync.status()
    print(f"✅ mongosync finished ({status['phase']}), last applied position {status['last_applied']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
