from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, List, Optional

from indexer_deploy.core.build.backends import BACKENDS, BuildBackend, get_backend
from indexer_deploy.core.build.dockerfile import render_dockerfile
from indexer_deploy.core.build.linkage import LINKAGE_KINDS
from indexer_deploy.core.build.pipeline import BuildPipeline, build_target_from_settings, plan_target
from indexer_deploy.core.build.verify import verify_artifact_integrity
from indexer_deploy.core.config import DeployConfig, load_config
from indexer_deploy.core.errors import ConfigError, DeployError
from indexer_deploy.core.provision.host import HostBackend, ZfsHost
from indexer_deploy.core.provision.provisioner import SocketProvisioner

log = logging.getLogger("deploy.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PROVISION_FAILED = 20


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def _make_host(cfg: DeployConfig) -> HostBackend:
    return ZfsHost()


def _make_backend(name: str, args: argparse.Namespace) -> BuildBackend:
    options = {}
    if name == "local":
        options["install_packages"] = bool(getattr(args, "install_packages", False))
    return get_backend(name, **options)


def _configure_logging(level: Optional[str]) -> None:
    lvl = (level or os.getenv("DEPLOY_LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, lvl, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load(args: argparse.Namespace) -> DeployConfig:
    cfg = load_config(Path(args.config) if args.config else None)
    if args.state_dir:
        cfg = cfg.model_copy(update={"state_dir": args.state_dir})
    return cfg


# ---------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------

def cmd_plan(args: argparse.Namespace, cfg: DeployConfig) -> int:
    target = build_target_from_settings(cfg.build, linkage=args.linkage, source_root=args.source_root)
    plan, _lock = plan_target(target, cfg.build.toolchain)
    _print_json(plan.to_dict())
    return EXIT_OK


def cmd_dockerfile(args: argparse.Namespace, cfg: DeployConfig) -> int:
    target = build_target_from_settings(cfg.build, linkage=args.linkage, source_root=args.source_root)
    plan, _lock = plan_target(target, cfg.build.toolchain)
    rendered = render_dockerfile(plan, cfg.build.toolchain)

    if not args.out:
        sys.stdout.write(rendered)
        return EXIT_OK

    out = Path(args.out)
    if args.check:
        current = out.read_text(encoding="utf-8") if out.exists() else None
        if current != rendered:
            print(f"ERROR: {out} is out of date (re-run without --check)", file=sys.stderr)
            return EXIT_FAILED
        print(f"OK: {out} is up to date")
        return EXIT_OK

    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(rendered, encoding="utf-8")
    print(f"Wrote {out}")
    return EXIT_OK


def cmd_build(args: argparse.Namespace, cfg: DeployConfig) -> int:
    settings = cfg.build
    target = build_target_from_settings(settings, linkage=args.linkage, source_root=args.source_root)
    backend = _make_backend(args.backend or settings.backend, args)

    pipeline = BuildPipeline(
        backend=backend,
        toolchain=settings.toolchain,
        state_dir=cfg.state_path,
        output_dir=Path(args.output_dir or settings.output_dir),
        image_name=settings.image_name,
        use_cache=not args.no_cache,
    )
    result = pipeline.run(target)
    _print_json(result.to_dict())
    return EXIT_OK


def cmd_provision(args: argparse.Namespace, cfg: DeployConfig) -> int:
    prov = cfg.provision
    families = list(prov.families)
    if args.family:
        families = []
        for name in args.family:
            fam = prov.family(name)
            if fam is None:
                raise ConfigError(f"Unknown family: {name} (known: {', '.join(f.name for f in prov.families)})")
            families.append(fam)

    provisioner = SocketProvisioner(_make_host(cfg), prov, cfg.state_path)

    if args.plan:
        _print_json({"pool": prov.pool, "families": [provisioner.plan_family(f) for f in families]})
        return EXIT_OK

    report = provisioner.provision_all(families)
    _print_json(report.to_dict())
    for r in report.failed():
        print(f"ERROR: family {r.family} failed at {r.failed_stage}: {r.error}", file=sys.stderr)
    return EXIT_OK if report.ok else EXIT_PROVISION_FAILED


def cmd_verify(args: argparse.Namespace, cfg: DeployConfig) -> int:
    artifact = Path(args.artifact)
    sha = Path(args.sha) if args.sha else artifact.with_name(artifact.name + ".sha256")
    result = verify_artifact_integrity(artifact, sha)
    _print_json(result)
    return EXIT_OK if result.get("valid") else EXIT_FAILED


def cmd_serve(args: argparse.Namespace, cfg: DeployConfig) -> int:
    from indexer_deploy.main import main as serve_main

    serve_main()
    return EXIT_OK


# ---------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="indexer-deploy", description="Build the electrs indexer and provision node socket directories")
    ap.add_argument("--config", default=None, help="Config file (default: $DEPLOY_CONFIG_FILE or ./deploy.yaml)")
    ap.add_argument("--state-dir", default=None, help="Override state_dir")
    ap.add_argument("--log-level", default=None, help="Log level (default: $DEPLOY_LOG_LEVEL or INFO)")
    sub = ap.add_subparsers(dest="command", required=True)

    def add_target_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--linkage", choices=LINKAGE_KINDS, default=None, help="Linkage mode (default from config)")
        p.add_argument("--source-root", default=None, help="Crate checkout (default from config)")

    p = sub.add_parser("build", help="Run the layered build and publish the binary")
    add_target_args(p)
    p.add_argument("--backend", choices=sorted(BACKENDS), default=None)
    p.add_argument("--output-dir", default=None)
    p.add_argument("--no-cache", action="store_true", help="Re-run every stage")
    p.add_argument("--install-packages", action="store_true", help="local backend: apt-get install build packages")
    p.set_defaults(func=cmd_build)

    p = sub.add_parser("plan", help="Validate manifests and print the stage plan")
    add_target_args(p)
    p.set_defaults(func=cmd_plan)

    p = sub.add_parser("dockerfile", help="Render the multi-stage Dockerfile")
    add_target_args(p)
    p.add_argument("--out", default=None, help="Write to this path instead of stdout")
    p.add_argument("--check", action="store_true", help="Fail if --out differs from the rendered Dockerfile")
    p.set_defaults(func=cmd_dockerfile)

    p = sub.add_parser("provision", help="Create socket datasets with ACLs and ownership")
    p.add_argument("--family", action="append", default=None, help="Only this family (repeatable)")
    p.add_argument("--plan", action="store_true", help="Print the commands without running them")
    p.set_defaults(func=cmd_provision)

    p = sub.add_parser("verify", help="Check a published binary against its .sha256")
    p.add_argument("artifact")
    p.add_argument("--sha", default=None)
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("serve", help="Run the read-only HTTP API")
    p.set_defaults(func=cmd_serve)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.log_level)

    try:
        cfg = _load(args)
        log.debug("command=%s env=%s state_dir=%s", args.command, cfg.env, cfg.state_dir)
        return args.func(args, cfg)
    except DeployError as e:
        print(f"ERROR: [{e.kind}] {e.message}", file=sys.stderr)
        problems = e.detail.get("problems") if e.detail else None
        for p in problems or []:
            print(f"  - {p}", file=sys.stderr)
        return e.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
