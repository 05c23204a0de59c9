# src/autopol/cli.py
"""
Command line entry point.

    autopol convert policies.yaml -o cilium.yaml
    autopol serve --port 8000
"""
import argparse
import os
import sys
from typing import List, Optional

from .errors import AutopolError
from .utils.logging import setup_logger

logger = setup_logger(__name__)


def _convert(args) -> int:
    from .config import load_config
    from .policy.store import load_knox_policies
    from .policy.synthesizer import convert_knox_policies_to_cilium, dump_cilium_policies_yaml
    from .services import KubernetesServiceCatalog

    config = load_config(args.config)
    policies = load_knox_policies(args.policies)

    services = []
    if args.from_cluster:
        catalog = KubernetesServiceCatalog(kubeconfig=args.kubeconfig or config.hubble.kubeconfig,
                                           cluster_name=config.cluster_name)
        services = catalog.list_services()

    cilium_policies = convert_knox_policies_to_cilium(
        services,
        policies,
        api_version=config.output.api_version,
        kind=config.output.kind,
        dns_service=config.dns.service_name,
        dns_namespace=config.dns.namespace,
    )

    if args.output:
        with open(args.output, 'w') as f:
            dump_cilium_policies_yaml(cilium_policies, f)
        logger.info(f"Wrote {len(cilium_policies)} cilium policies to {args.output}")
    else:
        dump_cilium_policies_yaml(cilium_policies, sys.stdout)

    return 0


def _serve(args) -> int:
    if args.config:
        os.environ["AUTOPOL_CONFIG"] = args.config

    from .api.server import run
    run(host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autopol", description="Cilium network policy discovery")
    parser.add_argument("--config", help="Path to configuration YAML (default: config/autopol.yaml)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    convert = subparsers.add_parser("convert", help="Convert knox policies to cilium policies")
    convert.add_argument("policies", help="Knox policy YAML file")
    convert.add_argument("-o", "--output", help="Output YAML file (default: stdout)")
    convert.add_argument("--from-cluster", action="store_true",
                         help="Read DNS service ports from the cluster service catalog")
    convert.add_argument("--kubeconfig", help="Kubeconfig used with --from-cluster")
    convert.set_defaults(func=_convert)

    serve = subparsers.add_parser("serve", help="Run the discovery API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        return args.func(args)
    except (AutopolError, OSError) as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
