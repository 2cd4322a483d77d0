#!/usr/bin/env python3
import click
import json
import os
from tabulate import tabulate

from core.errors import PeerRequestFailed
from services.peer_client import PeerClient

CONFIG_FILE = os.path.expanduser("~/.escrow-gateway/config.json")
DEFAULT_URL = 'http://localhost:8081'


def load_config():
    if not os.path.exists(CONFIG_FILE):
        return {}
    with open(CONFIG_FILE, 'r') as f:
        return json.load(f)


def save_config(config):
    os.makedirs(os.path.dirname(CONFIG_FILE), exist_ok=True)
    with open(CONFIG_FILE, 'w') as f:
        json.dump(config, f, indent=4)


def _client(ctx) -> PeerClient:
    return PeerClient(ctx.obj['url'])


def _fail(e: PeerRequestFailed):
    raise click.ClickException(e.message)


def _status_style(status):
    if status in ('released', 'refunded', 'confirmed'):
        return click.style(status.upper(), fg='green')
    if status and status.endswith('_initiated') or status == 'unconfirmed':
        return click.style(status.upper(), fg='yellow')
    if status in ('reverted', 'not_found'):
        return click.style(status.upper(), fg='red')
    return (status or '').upper()


def _print_tx(result):
    click.echo(f"Status : {_status_style(result.get('status'))}")
    click.echo(f"Tx hash: {result.get('tx_hash') or '-'}")
    if result.get('block_number'):
        click.echo(f"Block  : {result['block_number']} (gas used {result.get('gas_used')})")
    if not result.get('success'):
        click.echo(click.style("Not yet confirmed; run 'reconcile' later.", fg='yellow'))


@click.group()
@click.option('--url', default=None, help='Gateway base URL')
@click.pass_context
def cli(ctx, url):
    """ETH escrow gateway operator CLI"""
    ctx.ensure_object(dict)
    ctx.obj['url'] = url or load_config().get('gateway_url', DEFAULT_URL)


@cli.command()
@click.argument('url')
def init(url):
    """Save the default gateway URL."""
    config = load_config()
    config['gateway_url'] = url
    save_config(config)
    click.echo(f"Configuration saved to {CONFIG_FILE}")


@cli.command()
@click.argument('job_ids', nargs=-1, type=int, required=True)
@click.pass_context
def status(ctx, job_ids):
    """Show Ledger payment status for one or more applications."""
    client = _client(ctx)
    table = []
    for job_id in job_ids:
        try:
            r = client.job_status(job_id)
        except PeerRequestFailed as e:
            table.append([job_id, '-', '-', click.style('ERROR', fg='red'), e.message[:40]])
            continue
        table.append([
            r['application_id'],
            r.get('usd_amount') or '-',
            (r.get('freelancer_address') or '-')[:10],
            _status_style(r['payment_status']),
            r.get('tx_hash_deposit') or '-',
        ])
    click.echo(tabulate(table, headers=["App", "USD", "Freelancer", "Status", "Deposit tx"], tablefmt="simple"))


@cli.command()
@click.pass_context
def price(ctx):
    """Show the current ETH/USD price from the contract's feed."""
    try:
        r = _client(ctx).eth_price()
    except PeerRequestFailed as e:
        _fail(e)
    click.echo(f"ETH/USD: {int(r['eth_usd_price']) / 10 ** 8:.2f}")


@cli.command()
@click.argument('job_id', type=int)
@click.option('--freelancer', required=True, help='Freelancer wallet address')
@click.option('--client', 'client_address', required=True, help='Client wallet address')
@click.option('--usd', required=True, help='Agreed USD amount, e.g. 150.00')
@click.pass_context
def fund(ctx, job_id, freelancer, client_address, usd):
    """Fund the escrow for an application."""
    click.echo(f"Funding escrow for application {job_id} (${usd})...")
    try:
        r = _client(ctx).post_job(job_id, freelancer, usd, client_address)
    except PeerRequestFailed as e:
        _fail(e)
    _print_tx(r)


@cli.command()
@click.argument('job_id', type=int)
@click.pass_context
def complete(ctx, job_id):
    """Release payment to the freelancer."""
    try:
        r = _client(ctx).complete_job(job_id)
    except PeerRequestFailed as e:
        _fail(e)
    _print_tx(r)


@cli.command()
@click.argument('job_id', type=int)
@click.pass_context
def cancel(ctx, job_id):
    """Cancel the escrow and refund the client."""
    try:
        r = _client(ctx).cancel_job(job_id)
    except PeerRequestFailed as e:
        _fail(e)
    _print_tx(r)


@cli.command()
@click.argument('job_id', type=int)
@click.pass_context
def reconcile(ctx, job_id):
    """Align the Ledger with on-chain state."""
    try:
        r = _client(ctx).reconcile(job_id)
    except PeerRequestFailed as e:
        _fail(e)
    table = [[r['application_id'], r['chain_status'], r['previous_status'],
              _status_style(r['payment_status']), 'yes' if r['updated'] else 'no']]
    click.echo(tabulate(table, headers=["App", "Chain", "Was", "Now", "Updated"], tablefmt="simple"))
    for note in r.get('notes', []):
        click.echo(f"  - {note}")


@cli.command()
@click.argument('job_id', type=int)
@click.argument('tx_hash')
@click.pass_context
def verify(ctx, job_id, tx_hash):
    """Verify a client-signed funding transaction and record it."""
    try:
        r = _client(ctx).verify_deposit(job_id, tx_hash)
    except PeerRequestFailed as e:
        _fail(e)
    evidence = r.get('evidence', {})
    click.echo(click.style("VERIFIED", fg='green') + f" application {job_id} -> {r['payment_status']}")
    click.echo(f"Value: {evidence.get('value_wei')} wei (required {evidence.get('required_wei')})")


if __name__ == '__main__':
    cli()
