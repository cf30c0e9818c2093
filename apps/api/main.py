from __future__ import annotations

import asyncio
import logging
import threading
from decimal import Decimal

import asyncpg
from fastapi import FastAPI, HTTPException, Path, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from prometheus_client import make_asgi_app
from pydantic import BaseModel

from services.common.chain import ChainClient, format_ether
from services.common.contracts import ContractSet, normalize_address
from services.indexer.projection_store import ProjectionStore
from services.indexer.subscriber import LiveSubscriber

from .config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, default_response_class=ORJSONResponse)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=not settings.cors_allows_any_origin,
    allow_methods=['GET', 'POST', 'OPTIONS'],
    allow_headers=['Origin', 'X-Requested-With', 'Content-Type', 'Accept']
)
app.mount('/metrics', make_asgi_app())

_pg_pool: asyncpg.Pool | None = None
_store: ProjectionStore | None = None
_subscriber: LiveSubscriber | None = None
_subscriber_lock = threading.Lock()


class InitContractsRequest(BaseModel):
    complianceAddress: str
    tokenAddress: str
    oracleAddress: str
    dexAddress: str
    nftAddress: str | None = None


def _build_subscriber(contracts: ContractSet) -> LiveSubscriber:
    assert _store is not None
    chain = ChainClient(settings.rpc_url, timeout_seconds=settings.rpc_timeout_seconds)
    return LiveSubscriber(
        contracts,
        chain,
        _store,
        poll_interval_seconds=settings.indexer_poll_interval_seconds,
        backfill_blocks=settings.indexer_backfill_blocks,
        max_block_range=settings.indexer_max_block_range
    )


@app.on_event('startup')
async def startup() -> None:
    global _pg_pool, _store
    # No store, no service: schema creation failures abort startup.
    _store = await asyncio.to_thread(ProjectionStore.connect, settings.postgres_dsn)
    _pg_pool = await asyncpg.create_pool(dsn=settings.postgres_dsn, min_size=1, max_size=10)


@app.on_event('shutdown')
async def shutdown() -> None:
    global _pg_pool, _store, _subscriber
    if _subscriber is not None:
        await asyncio.to_thread(_subscriber.stop)
        _subscriber = None
    if _pg_pool is not None:
        await _pg_pool.close()
    if _store is not None:
        _store.close()


@app.get('/health')
async def health() -> dict[str, str]:
    state = _subscriber.state.value if _subscriber is not None else 'uninitialized'
    return {'status': 'ok', 'subscriber': state}


@app.get('/health/ready')
async def ready() -> dict[str, str]:
    assert _pg_pool is not None
    async with _pg_pool.acquire() as conn:
        await conn.fetchval('SELECT 1')
    return {'status': 'ready'}


@app.post('/init-contracts')
def init_contracts(req: InitContractsRequest) -> dict[str, str]:
    global _subscriber
    try:
        contracts = ContractSet.from_addresses(
            compliance=req.complianceAddress,
            token=req.tokenAddress,
            oracle=req.oracleAddress,
            dex=req.dexAddress,
            nft=req.nftAddress
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    with _subscriber_lock:
        if _subscriber is not None:
            if _subscriber.contracts != contracts:
                logger.warning('subscriber already bound to %s; ignoring bootstrap for %s', _subscriber.contracts, contracts)
            return {'status': 'ok'}

        if _store is None:
            raise HTTPException(status_code=503, detail='projection store is not initialized')

        _subscriber = _build_subscriber(contracts)
        _subscriber.start()
        logger.info('contracts initialized %s', contracts)

    return {'status': 'ok'}


@app.get('/users/{address}')
async def user(address: str) -> dict:
    normalized = normalize_address(address)
    if normalized is None:
        return {}
    assert _pg_pool is not None
    async with _pg_pool.acquire() as conn:
        row = await conn.fetchrow(
            '''
            SELECT
              address,
              is_whitelisted AS "isWhitelisted",
              is_blacklisted AS "isBlacklisted"
            FROM users
            WHERE address = $1
            ''',
            normalized
        )
    return dict(row) if row else {}


@app.get('/balances/{address}')
async def balances(address: str) -> list[dict]:
    normalized = normalize_address(address)
    if normalized is None:
        return []
    assert _pg_pool is not None
    async with _pg_pool.acquire() as conn:
        rows = await conn.fetch(
            '''
            SELECT address, symbol, balance::text AS balance
            FROM balances
            WHERE address = $1
            ORDER BY symbol ASC
            ''',
            normalized
        )
    return [dict(r) for r in rows]


@app.get('/stats')
async def stats() -> dict:
    assert _pg_pool is not None
    async with _pg_pool.acquire() as conn:
        rows = await conn.fetch(
            '''
            SELECT
              id,
              buyer,
              seller,
              amount::text AS amount,
              price::text AS price,
              timestamp
            FROM trades
            ORDER BY timestamp DESC, id DESC
            LIMIT 10
            '''
        )
    return {'trades': [dict(r) for r in rows]}


def _price_payload(row) -> dict:
    item = dict(row)
    item['priceEth'] = format_ether(int(item['price']))
    return item


@app.get('/prices')
async def prices() -> dict:
    assert _pg_pool is not None
    async with _pg_pool.acquire() as conn:
        rows = await conn.fetch('SELECT symbol, price::text AS price FROM asset_prices ORDER BY symbol ASC')
    return {'prices': [_price_payload(r) for r in rows]}


@app.get('/prices/{symbol}')
async def price(symbol: str) -> dict:
    assert _pg_pool is not None
    async with _pg_pool.acquire() as conn:
        row = await conn.fetchrow(
            'SELECT symbol, price::text AS price FROM asset_prices WHERE symbol = $1',
            symbol
        )
    return _price_payload(row) if row else {}


_NFT_COLUMNS = '''
  token_id::text AS "tokenId",
  owner,
  token_uri AS "tokenUri",
  seller,
  listing_price::text AS "listingPrice",
  is_listed AS "isListed"
'''


@app.get('/nfts')
async def nfts(listed: bool | None = Query(default=None)) -> dict:
    assert _pg_pool is not None
    sql_filter = ''
    params: list = []
    if listed is not None:
        params.append(listed)
        sql_filter = 'WHERE is_listed = $1'

    async with _pg_pool.acquire() as conn:
        rows = await conn.fetch(
            'SELECT' + _NFT_COLUMNS + 'FROM nfts ' + sql_filter + ' ORDER BY token_id ASC',
            *params
        )
    return {'rows': [dict(r) for r in rows]}


@app.get('/nfts/{token_id}')
async def nft(token_id: int = Path(..., ge=0)) -> dict:
    assert _pg_pool is not None
    async with _pg_pool.acquire() as conn:
        row = await conn.fetchrow('SELECT' + _NFT_COLUMNS + 'FROM nfts WHERE token_id = $1', Decimal(token_id))
    return dict(row) if row else {}


@app.get('/contracts/{address}/owner')
async def contract_owner(address: str) -> dict:
    normalized = normalize_address(address)
    if normalized is None:
        return {}
    assert _pg_pool is not None
    async with _pg_pool.acquire() as conn:
        row = await conn.fetchrow(
            '''
            SELECT contract_address AS "contractAddress", owner
            FROM contract_owners
            WHERE contract_address = $1
            ''',
            normalized
        )
    return dict(row) if row else {}


@app.get('/')
async def root() -> dict:
    return {'service': settings.app_name, 'status': 'ok'}
