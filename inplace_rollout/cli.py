import argparse
import asyncio
import json
import sys
from dataclasses import asdict

from .budget import compute_budget
from .engine import InPlaceRolloutEngine
from .errors import RolloutError
from .fake import FakeUpdateAgent, InMemoryCluster
from .logger import get_logger, setup_logging
from .models import ControllerConfig
from .selector import count_by_state, machines_undergoing_update

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def load_state(path):
    logger = get_logger("cli")
    try:
        with open(path) as f:
            return InMemoryCluster.from_state(json.load(f))
    except Exception as e:
        logger.error(f"Error loading state: {e}")
        raise


def save_state(path, cluster):
    with open(path, "w") as f:
        json.dump(cluster.to_state(), f, indent=2)


def pick_deployment(cluster, name=None):
    if name:
        return cluster.deployment(name)
    if len(cluster.deployments) != 1:
        raise ValueError(f"state holds {len(cluster.deployments)} deployments, pass --deployment")
    return cluster.deployment(next(iter(cluster.deployments)))


async def dry_run(cluster, deployment):
    """Budget and per-state machine counts, without touching anything"""
    machine_sets = cluster.all_machine_sets()
    new_set, old_sets = await cluster.get_all_machine_sets_and_sync_revision(deployment, machine_sets)
    in_flight = await machines_undergoing_update(cluster, old_sets)
    budget = compute_budget(deployment, old_sets + [new_set], new_set, in_flight)
    counts = {}
    for ms in machine_sets:
        counts[ms.name] = {state.name: n for state, n in (await count_by_state(cluster, ms)).items()}
    return {"newMachineSet": new_set.name, "budget": asdict(budget), "machineSets": counts}


async def simulate(cluster, deployment_name, config, max_passes, operator_batch):
    """Alternate reconciliation passes with update agent steps until the rollout completes"""
    engine = InPlaceRolloutEngine(cluster, config)
    agent = FakeUpdateAgent(cluster, operator_batch=operator_batch)
    passes = []
    for n in range(1, max_passes + 1):
        cluster.refresh_status()
        deployment = cluster.deployment(deployment_name)
        result = await engine.rollout(deployment, cluster.all_machine_sets())
        passes.append({"pass": n, "progress": result.progress, "selected": result.selected})
        if result.completed:
            break
        await agent.step()
    return passes


def build_config(args):
    return ControllerConfig(autoscaler_scale_down_annotation_during_rollout=not args.no_autoscaler_annotation)


def main():
    parser = argparse.ArgumentParser(description="In-place rolling update of machine deployments")
    parser.add_argument("--log-level", default="INFO", type=str.upper, choices=LOG_LEVELS)
    parser.add_argument("--no-autoscaler-annotation", action="store_true",
                        help="do not disable autoscaler scale-down on nodes during the rollout")
    sub = parser.add_subparsers(dest="cmd", required=True)

    reconcile = sub.add_parser("reconcile", help="run one pass against a state file")
    reconcile.add_argument("--state", required=True)
    reconcile.add_argument("--deployment")
    reconcile.add_argument("--dry-run", action="store_true")

    sim = sub.add_parser("simulate", help="drive a state file to completion with a fake update agent")
    sim.add_argument("--state", required=True)
    sim.add_argument("--deployment")
    sim.add_argument("--max-passes", type=int, default=100)
    sim.add_argument("--operator-batch", type=int, default=1,
                     help="nodes the fake operator marks at once in a manual rollout")

    kube = sub.add_parser("kube", help="run one pass against a live cluster")
    kube.add_argument("--namespace", required=True)
    kube.add_argument("--deployment", required=True)
    kube.add_argument("--context")
    kube.add_argument("--in-cluster", action="store_true")

    args = parser.parse_args()
    setup_logging(args.log_level)
    config = build_config(args)

    if args.cmd == "reconcile":
        try:
            cluster = load_state(args.state)
            deployment = pick_deployment(cluster, args.deployment)
        except Exception as e:
            print(f"Error: {e}")
            sys.exit(1)

        async def run():
            if args.dry_run:
                print(json.dumps(await dry_run(cluster, deployment), indent=2))
                return
            result = await InPlaceRolloutEngine(cluster, config).rollout(deployment, cluster.all_machine_sets())
            print(json.dumps(asdict(result), indent=2))
            save_state(args.state, cluster)

        try:
            asyncio.run(run())
        except RolloutError as e:
            print(f"Error: {e}")
            sys.exit(1)

    if args.cmd == "simulate":
        try:
            cluster = load_state(args.state)
            deployment = pick_deployment(cluster, args.deployment)
            passes = asyncio.run(simulate(cluster, deployment.name, config, args.max_passes,
                                          args.operator_batch if deployment.is_manual else 0))
        except Exception as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(json.dumps(passes, indent=2))
        save_state(args.state, cluster)
        if not passes or passes[-1]["progress"] != "completed":
            sys.exit(2)

    if args.cmd == "kube":
        from .kube_client import KubeCluster

        async def run_kube():
            cluster = KubeCluster(args.namespace, in_cluster=args.in_cluster, context=args.context)
            deployment = await cluster.get_machine_deployment(args.deployment)
            machine_sets = await cluster.list_machine_sets(deployment)
            return await InPlaceRolloutEngine(cluster, config).rollout(deployment, machine_sets)

        try:
            result = asyncio.run(run_kube())
        except Exception as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(json.dumps(asdict(result), indent=2))


if __name__ == "__main__":
    main()
