"""
Command Line Interface for stackship.
"""
import functools
import json
import os

import click
from dotenv import dotenv_values

from ..CONVERTERS.proxy_config import ProxyConfig
from ..CONVERTERS.workflow import WorkflowConverter
from ..MANAGERS.deployment_orchestrator import DeploymentOrchestrator
from ..MANAGERS.volume_manager import VolumeStore
from ..MODELS.deployment import DeploymentTarget, ReconciliationResult
from ..MODELS.stack_spec import RetentionPolicy
from ..PARSERS.stack_parser import StackParser
from ..REMOTE.remote_executor import RemoteExecutor
from ..RUNNERS.container_runtime import DockerRuntime
from ..UTILS.logging_setup import setup_logging
from ..UTILS.settings import Settings
from ..errors import StackshipError


def handle_errors(f):
    """
    Reports a StackshipError on stderr and exits with its code.
    """
    @functools.wraps(f)
    def wrapper(ctx, *args, **kwargs):
        try:
            return f(ctx, *args, **kwargs)
        except StackshipError as e:
            click.echo(f"Error ({e.kind}): {e.message}", err=True)
            ctx.exit(e.exit_code)
    return wrapper


@click.group()
@click.option('--file', '-f', default=None, help='Stack file path [default: $STACKSHIP_STACK_FILE or stack.yml]')
@click.option('--stack-dir', default=None, help='Directory holding the stack file [default: $STACKSHIP_STACK_DIR]')
@click.option('--env-file', default=None, help='.env file with STACKSHIP_* settings and stack variables')
@click.option('--json', 'json_out', is_flag=True, help='Print results as JSON')
@click.option('--log-level', default=None, help='Logging level [default: $STACKSHIP_LOG_LEVEL or INFO]')
@click.pass_context
def cli(ctx, file, stack_dir, env_file, json_out, log_level):
    """
    stackship - deploy a container stack to a single host.

    Pulls every image first, then recreates services without touching named volumes.
    """
    ctx.ensure_object(dict)
    try:
        settings = ctx.obj.get('settings') or Settings.load(env_file)
    except StackshipError as e:
        click.echo(f"Error ({e.kind}): {e.message}", err=True)
        ctx.exit(e.exit_code)
    setup_logging(log_level or settings.log_level)
    ctx.obj['settings'] = settings
    file = file or settings.stack_file
    stack_dir = stack_dir or (settings.stack_dir if settings.stack_dir != '.' else None)
    if stack_dir and not os.path.isabs(file):
        file = os.path.join(stack_dir, file)
    ctx.obj['file'] = file
    ctx.obj['env_file'] = env_file
    ctx.obj['json'] = json_out


def _load_stack(ctx):
    context = {}
    if ctx.obj.get('env_file'):
        context.update({k: v for k, v in dotenv_values(ctx.obj['env_file']).items() if v is not None})
    context.update(os.environ)
    return StackParser(context).parse(ctx.obj['file'])


def _runtime(ctx):
    if 'runtime' not in ctx.obj:
        ctx.obj['runtime'] = DockerRuntime()
    return ctx.obj['runtime']


def _orchestrator(ctx):
    settings = ctx.obj['settings']
    kwargs = {}
    if 'port_probe' in ctx.obj:
        kwargs['port_probe'] = ctx.obj['port_probe']
    orchestrator = DeploymentOrchestrator(
        _runtime(ctx),
        settle_seconds=settings.settle_seconds,
        lease_seconds=settings.lease_seconds,
        lock_wait_seconds=settings.lock_timeout,
        **kwargs,
    )
    if settings.has_registry_credentials:
        orchestrator.registry.login(
            settings.registry, settings.registry_user, settings.registry_password.get_secret_value()
        )
    return orchestrator


def _local_target(ctx):
    stack_dir = os.path.dirname(os.path.abspath(ctx.obj['file']))
    return DeploymentTarget(host="localhost", stack_dir=stack_dir, stack_file=os.path.basename(ctx.obj['file']))


def _echo_services(results):
    click.echo(f"{'SERVICE':15} {'OUTCOME':10} {'STATE':10} ERROR")
    click.echo("-" * 50)
    for r in results:
        name = f"{r.name} (orphan)" if r.orphan else r.name
        click.echo(f"{name:15} {r.outcome.value:10} {r.state.value:10} {r.error or ''}")


def _report(ctx, result: ReconciliationResult):
    if ctx.obj['json']:
        click.echo(result.to_json())
    else:
        click.echo(f"Status: {result.status.value}")
        _echo_services(result.services)
        if result.failed_services:
            click.echo(f"Failed: {', '.join(result.failed_services)}")
    ctx.exit(result.exit_code)


@cli.command()
@click.pass_context
@handle_errors
def pull(ctx):
    """Pull every service image without touching containers."""
    stack = _load_stack(ctx)
    pulls = _orchestrator(ctx).pull_all(stack)
    if ctx.obj['json']:
        click.echo(json.dumps({
            name: {"image": p.image, "image_id": p.image_id, "changed": p.changed}
            for name, p in pulls.items()
        }, indent=2))
        return
    click.echo(f"{'SERVICE':15} {'IMAGE':40} CHANGED")
    for name, p in pulls.items():
        click.echo(f"{name:15} {p.image:40} {'yes' if p.changed else 'no'}")


@cli.command('stop-all')
@click.pass_context
@handle_errors
def stop_all(ctx):
    """Stop and remove the stack's containers, dependents first. Volumes are kept."""
    stack = _load_stack(ctx)
    orchestrator = _orchestrator(ctx)
    with orchestrator.lock_for(_local_target(ctx), stack):
        results = orchestrator.stop_all(stack)
    _echo_services(results)
    failed = [r for r in results if r.error_kind]
    if failed:
        ctx.exit(3)


@cli.command('start-all')
@click.pass_context
@handle_errors
def start_all(ctx):
    """Start every service, dependencies first."""
    stack = _load_stack(ctx)
    orchestrator = _orchestrator(ctx)
    with orchestrator.lock_for(_local_target(ctx), stack):
        results = orchestrator.start_all(stack)
    _echo_services(results)
    if any(r.error or r.error_kind for r in results):
        ctx.exit(3)


@cli.command()
@click.pass_context
@handle_errors
def reconcile(ctx):
    """Pull, stop and restart the stack on this host."""
    stack = _load_stack(ctx)
    result = _orchestrator(ctx).reconcile(_local_target(ctx), stack)
    _report(ctx, result)


@cli.command()
@click.pass_context
@handle_errors
def ps(ctx):
    """List service status"""
    stack = _load_stack(ctx)
    status = _orchestrator(ctx).supervisor_for(stack).ps()
    if ctx.obj['json']:
        click.echo(json.dumps({name: state.value for name, state in status.items()}, indent=2))
        return
    click.echo(f"{'SERVICE':15} {'STATUS':10}")
    click.echo("-" * 25)
    for name, state in status.items():
        click.echo(f"{name:15} {state.value:10}")


@cli.command()
@click.pass_context
@handle_errors
def volumes(ctx):
    """List the stack's named volumes"""
    stack = _load_stack(ctx)
    for name in VolumeStore(_runtime(ctx), stack.project).list_volumes():
        click.echo(name)


@cli.command('volume-rm')
@click.argument('name')
@click.option('--force', is_flag=True, help='Required to destroy a persistent volume')
@click.confirmation_option(prompt='This permanently deletes the volume and its data. Continue?')
@click.pass_context
@handle_errors
def volume_rm(ctx, name, force):
    """Destroy a named volume and its data."""
    stack = _load_stack(ctx)
    store = VolumeStore(_runtime(ctx), stack.project)
    short = name[len(stack.project) + 1:] if name.startswith(f"{stack.project}_") else name
    declared = stack.volumes.get(short)
    retention = declared.retention if declared else RetentionPolicy.PERSISTENT
    if store.remove(name, retention=retention, force=force):
        click.echo(f"Removed {store.engine_name(name)}")
    else:
        click.echo(f"No volume {store.engine_name(name)}")


def _remote_target(ctx, host):
    return ctx.obj['settings'].target(host)


def _executor(ctx):
    if 'executor' not in ctx.obj:
        ctx.obj['executor'] = RemoteExecutor(command_timeout=ctx.obj['settings'].ssh_timeout)
    return ctx.obj['executor']


@cli.command('check-target')
@click.option('--host', default=None, help='Override $STACKSHIP_HOST')
@click.pass_context
@handle_errors
def check_target(ctx, host):
    """Probe the deployment host for reachability."""
    target = _remote_target(ctx, host)
    latency = _executor(ctx).probe(target)
    click.echo(f"{target} reachable ({latency:.1f} ms)")


@cli.command()
@click.option('--host', default=None, help='Override $STACKSHIP_HOST')
@click.option('--remote-env-file', default=None, help='.env file on the host, relative to the stack directory')
@click.pass_context
@handle_errors
def deploy(ctx, host, remote_env_file):
    """Run reconcile on the deployment host over ssh."""
    settings = ctx.obj['settings']
    target = _remote_target(ctx, host)
    result = _executor(ctx).reconcile(target, settings.remote_command, env_file=remote_env_file)
    _report(ctx, result)


@cli.command('render-proxy')
@click.option('--backend', default='backend', help='Service that serves the API')
@click.option('--backend-port', type=int, default=None, help='Backend container port [default: from the stack file]')
@click.option('--root', default='/usr/share/nginx/html', help='Static asset root')
@click.option('--api-prefix', default='/api/', help='Path prefix proxied to the backend')
@click.option('--out', '-o', default='nginx/default.conf', help='Output file')
@click.pass_context
@handle_errors
def render_proxy(ctx, backend, backend_port, root, api_prefix, out):
    """Render the reverse proxy configuration for the frontend image."""
    if backend_port is None:
        config = ProxyConfig.from_stack(_load_stack(ctx), backend=backend, root=root, api_prefix=api_prefix)
    else:
        config = ProxyConfig.default_for(backend=backend, backend_port=backend_port, root=root,
                                         api_prefix=api_prefix)
    click.echo(f"Wrote {config.write(out)}")


@cli.command('render-workflow')
@click.option('--build', 'builds', multiple=True, help='SERVICE=CONTEXT for images built in CI')
@click.option('--branch', default='main', help='Branch that triggers deployments')
@click.option('--out', '-o', default='.github/workflows/deploy.yml', help='Output file')
@click.pass_context
@handle_errors
def render_workflow(ctx, builds, branch, out):
    """Render a CI workflow that builds images and runs deploy."""
    contexts = {}
    for item in builds:
        if '=' not in item:
            raise click.BadParameter(f"expected SERVICE=CONTEXT, got {item!r}", param_hint='--build')
        service, context = item.split('=', 1)
        contexts[service] = context
    settings = ctx.obj['settings']
    converter = WorkflowConverter(_load_stack(ctx), contexts, branch=branch,
                                  stack_dir=settings.stack_dir, stack_file=settings.stack_file)
    click.echo(f"Wrote {converter.convert(out)}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})

if __name__ == '__main__':
    main()
