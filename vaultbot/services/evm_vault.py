"""On-chain vault adapter (web3.py).

Talks to the deployed vault contracts over JSON-RPC. Two contract generations
are supported:

    v6  isolated-margin vault: openLong/openShort/closeLong/closeShort,
        Chainlink oracle prices with 8 decimals
    v8  GMX-backed vault: openPosition/closePosition (payable, execution fee),
        settings tuple per user, GMX prices with 30 - token decimals

USDC amounts are 6-decimal integers on-chain. The bot's signer key is stored
Fernet-encrypted in the credential table.
"""

import asyncio
import logging

from sqlmodel import Session, select
from web3 import AsyncWeb3

from vaultbot.config import ChainSettings, TokenSettings, settings
from vaultbot.exceptions import VaultReadError, VaultWriteError
from vaultbot.services.vault_adapter import CloseResult, OpenResult, PositionSnapshot, VaultAdapter, VaultStatus

logger = logging.getLogger(__name__)

USDC_DECIMALS = 6
ORACLE_DECIMALS = 8
MAX_UINT256 = 2**256 - 1


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list, mutability: str = "view") -> dict:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": outputs,
        "stateMutability": mutability,
    }


def _out(*types: tuple[str, str]) -> list[dict]:
    return [{"name": n, "type": t} for n, t in types]


def _tuple_out(*components: tuple[str, str]) -> list[dict]:
    return [{"name": "", "type": "tuple", "components": _out(*components)}]


_USER_TOKEN = [("user", "address"), ("token", "address")]

VAULT_V6_ABI = [
    _fn("balances", [("user", "address")], _out(("", "uint256"))),
    _fn("autoTradeEnabled", [("user", "address")], _out(("", "bool"))),
    _fn("userRiskLevel", [("user", "address")], _out(("", "uint256"))),
    _fn("getPosition", _USER_TOKEN, _tuple_out(
        ("isLong", "bool"), ("isActive", "bool"), ("tokenAmount", "uint256"),
        ("entryPrice", "uint256"), ("collateral", "uint256"), ("borrowedAmount", "uint256"),
        ("leverage", "uint256"), ("stopLossPrice", "uint256"), ("takeProfitPrice", "uint256"),
        ("openedAt", "uint256"), ("liquidationPrice", "uint256"),
    )),
    _fn("getOraclePrice", [("token", "address")], _out(("price", "uint256"))),
    _fn("accumulatedFees", [], _out(("", "uint256"))),
    _fn("openLong", _USER_TOKEN + [
        ("collateralAmount", "uint256"), ("leverage", "uint256"), ("stopLossPercent", "uint256"),
        ("takeProfitPercent", "uint256"), ("minTokenOut", "uint256"),
    ], _out(("tokenOut", "uint256")), "nonpayable"),
    _fn("openShort", _USER_TOKEN + [
        ("collateralAmount", "uint256"), ("leverage", "uint256"), ("stopLossPercent", "uint256"),
        ("takeProfitPercent", "uint256"), ("minUsdcOut", "uint256"),
    ], _out(("usdcReceived", "uint256")), "nonpayable"),
    _fn("closeLong", _USER_TOKEN + [("minUsdcOut", "uint256")], _out(("returnAmount", "uint256")), "nonpayable"),
    _fn("closeShort", _USER_TOKEN + [("maxUsdcIn", "uint256")], _out(("returnAmount", "uint256")), "nonpayable"),
    _fn("withdrawFees", [], [], "nonpayable"),
]

VAULT_V8_ABI = [
    _fn("balances", [("user", "address")], _out(("", "uint256"))),
    _fn("getSettings", [("user", "address")], _tuple_out(
        ("autoTradeEnabled", "bool"), ("riskBps", "uint256"), ("maxLeverage", "uint256"),
        ("stopLossBps", "uint256"), ("takeProfitBps", "uint256"),
    )),
    _fn("getPosition", _USER_TOKEN, _tuple_out(
        ("isActive", "bool"), ("isLong", "bool"), ("token", "address"), ("collateral", "uint256"),
        ("size", "uint256"), ("leverage", "uint256"), ("entryPrice", "uint256"),
        ("stopLoss", "uint256"), ("takeProfit", "uint256"), ("timestamp", "uint256"),
        ("requestKey", "bytes32"), ("highestPrice", "uint256"), ("lowestPrice", "uint256"),
        ("trailingSlBps", "uint256"), ("trailingActivated", "bool"), ("autoFeaturesEnabled", "bool"),
    )),
    _fn("getPrice", [("token", "address")], _out(("maxPrice", "uint256"), ("minPrice", "uint256"))),
    _fn("getExecutionFee", [], _out(("", "uint256"))),
    _fn("fees", [], _out(("", "uint256"))),
    _fn("openPosition", _USER_TOKEN + [
        ("collateral", "uint256"), ("leverage", "uint256"), ("isLong", "bool"),
        ("slBps", "uint256"), ("tpBps", "uint256"), ("trailingSlBps", "uint256"),
    ], _out(("requestKey", "bytes32")), "payable"),
    _fn("closePosition", [("user", "address"), ("indexToken", "address")], _out(("requestKey", "bytes32")), "payable"),
    _fn("withdrawFees", [], [], "nonpayable"),
]


def _usdc(raw: int) -> float:
    return raw / 10**USDC_DECIMALS


def _to_usdc_units(amount: float) -> int:
    return int(round(amount * 10**USDC_DECIMALS))


def _bps(percent: float) -> int:
    return int(round(percent * 100))


class EvmVaultAdapter(VaultAdapter):
    """Vault adapter backed by a deployed vault contract."""

    def __init__(self, chain_id: int, chain: ChainSettings, generation: str = "v6"):
        super().__init__(chain_id, chain)
        if not chain.rpc_url or not chain.vault_address:
            raise ValueError(f"Chain {chain_id} needs rpc_url and vault_address for a {generation} vault")
        self.generation = generation
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(chain.rpc_url))
        abi = VAULT_V8_ABI if generation == "v8" else VAULT_V6_ABI
        self.contract = self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(chain.vault_address), abi=abi)
        self._account = None

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _signer(self):
        """Load the bot signer for this chain from the credential table."""
        if self._account is None:
            from vaultbot.database import engine
            from vaultbot.models.credential import Credential
            from vaultbot.services.encryption import decrypt

            with Session(engine) as session:
                cred = session.exec(
                    select(Credential).where(
                        Credential.chain_id == self.chain_id, Credential.is_active == True
                    )
                ).first()
            if cred is None:
                raise VaultWriteError(f"No active signer credential for chain {self.chain_id}")
            self._account = self.w3.eth.account.from_key(decrypt(cred.private_key_encrypted))
        return self._account

    async def _read(self, fn, label: str):
        try:
            return await asyncio.wait_for(fn.call(), timeout=settings.rpc_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise VaultReadError(f"{label} timed out") from e
        except Exception as e:
            raise VaultReadError(f"{label} failed: {e}") from e

    async def _send(self, fn, label: str, value: int = 0):
        """Simulate, sign, send and wait for a contract call. Returns (tx_hash, simulated_result)."""
        account = self._signer()
        tx_hash = None
        try:
            simulated = await asyncio.wait_for(
                fn.call({"from": account.address, "value": value}),
                timeout=settings.rpc_timeout_seconds,
            )
            nonce = await self.w3.eth.get_transaction_count(account.address)
            tx = await fn.build_transaction({
                "from": account.address,
                "nonce": nonce,
                "chainId": self.chain_id,
                "value": value,
            })
            signed = account.sign_transaction(tx)
            tx_hash = (await self.w3.eth.send_raw_transaction(signed.raw_transaction)).to_0x_hex()
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=settings.tx_timeout_seconds)
        except VaultWriteError:
            raise
        except Exception as e:
            raise VaultWriteError(f"{label} failed: {e}", tx_hash=tx_hash) from e

        if receipt["status"] != 1:
            raise VaultWriteError(f"{label} reverted", tx_hash=tx_hash)
        logger.info(f"[{self.generation}] {label} confirmed: {tx_hash}")
        return tx_hash, simulated

    def _addr(self, address: str) -> str:
        return AsyncWeb3.to_checksum_address(address)

    def _price_from_raw(self, raw: int, token: TokenSettings) -> float:
        if self.generation == "v8":
            return raw / 10 ** (30 - token.decimals)
        return raw / 10**ORACLE_DECIMALS

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_status(self, user: str) -> VaultStatus:
        addr = self._addr(user)
        balance = await self._read(self.contract.functions.balances(addr), "balances")
        if self.generation == "v8":
            user_settings = await self._read(self.contract.functions.getSettings(addr), "getSettings")
            auto_trade, risk_bps = bool(user_settings[0]), int(user_settings[1]) or 500
        else:
            auto_trade = await self._read(self.contract.functions.autoTradeEnabled(addr), "autoTradeEnabled")
            risk_bps = int(await self._read(self.contract.functions.userRiskLevel(addr), "userRiskLevel")) or 500
        # v6 enforces its per-token cooldown on-chain; neither generation exposes a global gate
        return VaultStatus(
            balance=_usdc(balance),
            auto_trade_enabled=bool(auto_trade),
            can_trade_now=True,
            risk_level_bps=risk_bps,
        )

    async def get_position(self, user: str, token: TokenSettings) -> PositionSnapshot | None:
        raw = await self._read(
            self.contract.functions.getPosition(self._addr(user), self._addr(token.address)), "getPosition"
        )
        if self.generation == "v8":
            is_active, is_long, _, collateral, size, leverage, entry = raw[:7]
            entry_price = self._price_from_raw(entry, token)
            token_amount = (size / 10**30) / entry_price if entry_price > 0 else 0.0
            borrowed = 0.0
        else:
            is_long, is_active, token_amount_raw, entry, collateral, borrowed_raw, leverage = raw[:7]
            entry_price = self._price_from_raw(entry, token)
            token_amount = token_amount_raw / 10**token.decimals
            borrowed = _usdc(borrowed_raw)
        if not is_active:
            return None
        return PositionSnapshot(
            is_active=True,
            is_long=bool(is_long),
            collateral=_usdc(collateral),
            entry_price=entry_price,
            token_amount=token_amount,
            leverage=float(leverage),
            borrowed_amount=borrowed,
        )

    async def get_onchain_balance(self, user: str, token: TokenSettings) -> float:
        snapshot = await self.get_position(user, token)
        if snapshot is None or not snapshot.is_active:
            return 0.0
        return snapshot.token_amount or snapshot.collateral

    async def get_price(self, token: TokenSettings) -> float | None:
        addr = self._addr(token.address)
        if self.generation == "v8":
            max_price, min_price = await self._read(self.contract.functions.getPrice(addr), "getPrice")
            raw = (max_price + min_price) // 2
        else:
            raw = await self._read(self.contract.functions.getOraclePrice(addr), "getOraclePrice")
        price = self._price_from_raw(raw, token)
        return price if price > 0 else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def open_position(
        self,
        user: str,
        token: TokenSettings,
        collateral: float,
        leverage: float,
        is_long: bool,
        stop_percent: float,
        take_profit_percent: float,
    ) -> OpenResult:
        user_addr, token_addr = self._addr(user), self._addr(token.address)
        collateral_units = _to_usdc_units(collateral)
        side = "LONG" if is_long else "SHORT"
        logger.info(
            f"[{self.generation}] Opening {side} {token.symbol} for {user[:10]}: "
            f"{collateral:.2f} USDC x{leverage:g} tp={take_profit_percent}% trail={stop_percent}%"
        )

        if self.generation == "v8":
            fee = await self._read(self.contract.functions.getExecutionFee(), "getExecutionFee")
            fn = self.contract.functions.openPosition(
                user_addr, token_addr, collateral_units, int(leverage), is_long,
                0, _bps(take_profit_percent), _bps(stop_percent),
            )
            tx_hash, _ = await self._send(fn, f"openPosition {token.symbol}", value=fee)
        else:
            name = "openLong" if is_long else "openShort"
            fn = getattr(self.contract.functions, name)(
                user_addr, token_addr, collateral_units, int(leverage),
                0, _bps(take_profit_percent), 0,
            )
            tx_hash, _ = await self._send(fn, f"{name} {token.symbol}")

        snapshot = None
        try:
            snapshot = await self.get_position(user, token)
        except VaultReadError as e:
            logger.warning(f"[{self.generation}] Opened {tx_hash} but could not read position back: {e}")

        if snapshot is None:
            return OpenResult(tx_hash=tx_hash)
        return OpenResult(
            tx_hash=tx_hash,
            entry_price=snapshot.entry_price or None,
            token_amount=snapshot.token_amount,
            borrowed_amount=snapshot.borrowed_amount,
        )

    async def close_position(self, user: str, token: TokenSettings, is_long: bool, reason: str) -> CloseResult:
        user_addr, token_addr = self._addr(user), self._addr(token.address)
        logger.info(f"[{self.generation}] Closing {token.symbol} for {user[:10]} ({reason})")

        if self.generation == "v8":
            fee = await self._read(self.contract.functions.getExecutionFee(), "getExecutionFee")
            fn = self.contract.functions.closePosition(user_addr, token_addr)
            tx_hash, _ = await self._send(fn, f"closePosition {token.symbol}", value=fee)
            return CloseResult(tx_hash=tx_hash)

        if is_long:
            fn = self.contract.functions.closeLong(user_addr, token_addr, 0)
        else:
            fn = self.contract.functions.closeShort(user_addr, token_addr, MAX_UINT256)
        tx_hash, returned = await self._send(fn, f"close {token.symbol}")
        return CloseResult(tx_hash=tx_hash, realized_amount=_usdc(returned) if returned else None)

    async def sweep_fees(self) -> float:
        fees_fn = self.contract.functions.fees() if self.generation == "v8" else self.contract.functions.accumulatedFees()
        pending = _usdc(await self._read(fees_fn, "fees"))
        if pending <= 0:
            return 0.0
        await self._send(self.contract.functions.withdrawFees(), "withdrawFees")
        return pending

    async def close(self):
        await self.w3.provider.disconnect()
