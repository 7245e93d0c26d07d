"""
Command Line Interface for S2K.
"""
import os
import threading
from concurrent.futures import ThreadPoolExecutor

import click
from dotenv import load_dotenv
from kubernetes.client.rest import ApiException

from ..errors import StackError
from ..MANAGERS.cluster_client import ClusterClient
from ..MANAGERS.stack_orchestrator import StackOrchestrator
from ..MODELS.deploy_config import DeployConfig, StackDeployOptions
from ..PARSERS.stack_parser import StackParser
from ..UTILS.logging import configure_logging

DEFAULT_NAMESPACE = "default"


def stack_options(f):
    f = click.option('--namespace', '-n', default=None, help='Namespace to deploy to')(f)
    f = click.option('--name', default=None, help='Stack name')(f)
    return f


@click.group()
@click.option('--file', '-f', default='docker-compose.yml', help='Stack file path')
@click.option('--log-level', default=None, help='Log level (debug, info, warning, error)')
@click.option('--json-logs', is_flag=True, help='Emit logs as JSON lines')
@click.pass_context
def cli(ctx, file, log_level, json_logs):
    """
    S2K - Stack to Kubernetes.

    Deploys compose-style stacks as workloads of a shared Kubernetes namespace.
    """
    load_dotenv()
    config = DeployConfig.from_env()
    configure_logging(log_level or config.log_level, json_output=json_logs)

    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['config'] = config


def _orchestrator(ctx, name, namespace) -> StackOrchestrator:
    """
    Builds the orchestrator for the stack file of the current invocation.
    """
    file = ctx.obj['file']
    if not os.path.exists(file):
        raise click.ClickException(f"{file} not found.")

    config: DeployConfig = ctx.obj['config']
    try:
        stack = StackParser().parse(file, name=name)
    except ValueError as e:
        raise click.ClickException(f"invalid stack file {file}: {e}")

    namespace = namespace or stack.namespace or config.namespace or DEFAULT_NAMESPACE
    stack = stack.model_copy(update={"namespace": namespace})

    client = ctx.obj.get('client')
    if client is None:
        client = ClusterClient.from_config(config.kubeconfig, config.context)
    return StackOrchestrator(stack, client, config)


def _fail(e: Exception):
    if isinstance(e, ApiException):
        raise click.ClickException(f"cluster API error: {e.status} {e.reason}")
    raise click.ClickException(str(e))


@cli.command()
@click.argument('services', nargs=-1)
@stack_options
@click.option('--build', is_flag=True, help='Build images before deploying')
@click.option('--wait', is_flag=True, help='Wait until services are running')
@click.option('--timeout', default=300.0, type=float, help='Seconds to wait for services')
@click.pass_context
def deploy(ctx, services, name, namespace, build, wait, timeout):
    """Deploy the stack, or only SERVICES and their dependencies."""
    orchestrator = _orchestrator(ctx, name, namespace)
    options = StackDeployOptions(
        services_to_deploy=list(services),
        force_build=build,
        wait=wait,
        timeout=timeout,
    )

    cancel_event = threading.Event()
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(orchestrator.deploy, options, cancel_event)
        try:
            try:
                deployed = future.result()
            except KeyboardInterrupt:
                click.echo("\nCancelling deploy...", err=True)
                cancel_event.set()
                deployed = future.result()
        except (StackError, ApiException) as e:
            _fail(e)

    click.echo(f"Stack '{orchestrator.stack.name}' deployed: {', '.join(deployed)}")


@cli.command()
@stack_options
@click.pass_context
def ps(ctx, name, namespace):
    """List service status"""
    orchestrator = _orchestrator(ctx, name, namespace)
    try:
        status = orchestrator.ps()
    except ApiException as e:
        _fail(e)
    click.echo(f"{'SERVICE':15} {'STATUS':12}")
    click.echo("-" * 27)
    for svc_name, state in status.items():
        click.echo(f"{svc_name:15} {state:12}")


@cli.command()
@stack_options
@click.option('--volumes', '-v', is_flag=True, help='Also remove named volumes')
@click.pass_context
def destroy(ctx, name, namespace, volumes):
    """Remove every object of the stack."""
    orchestrator = _orchestrator(ctx, name, namespace)
    try:
        orchestrator.destroy(remove_volumes=volumes)
    except ApiException as e:
        _fail(e)
    click.echo(f"Stack '{orchestrator.stack.name}' destroyed.")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
