"""
JSON HTTP API for the engine.

Identity comes from the auth gateway in three headers:
    X-User-ID, X-User-Role, X-Identity-Signature = hex HMAC-SHA256("{userId}:{role}")
Unsigned or badly signed requests get 401. Amounts travel as decimal strings.
"""
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from functools import partial

from aiohttp import web
from sqlalchemy.orm import Session

from config import Config
from core.db import get_session
from core.identity import Actor, ROLE_USER, verify_identity
from mlm_engine.errors import (
    EngineError, InsufficientBalance, InvalidAmount, InvalidOtp, InvalidPlacement,
    LedgerUnavailable, NotEligible, NotFound, OTPDeliveryError, PermissionDenied, UnknownSponsor,
    ConcurrentModification,
)
from mlm_engine.services.investment_service import InvestmentService
from mlm_engine.services.otp_service import OTPService
from mlm_engine.services.report_service import ReportService
from mlm_engine.services.request_service import RequestService
from mlm_engine.services.tree_service import TreeService
from mlm_engine.utils.money import parse_amount
from models.wallet import INVESTMENT

logger = logging.getLogger(__name__)

# Paths reachable without identity headers
PUBLIC_PATHS = ('/health', '/register')
PUBLIC_PREFIXES = ('/sponsor/',)

ERROR_STATUS = [
    (InvalidAmount, 400),
    (InvalidPlacement, 400),
    (InvalidOtp, 400),
    (PermissionDenied, 403),
    (NotFound, 404),
    (UnknownSponsor, 404),
    (InsufficientBalance, 409),
    (NotEligible, 409),
    (ConcurrentModification, 409),
    (OTPDeliveryError, 502),
    (LedgerUnavailable, 503),
]


def _json_default(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


_dumps = partial(json.dumps, default=_json_default)


def json_response(data, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


def bad_request(code: str, message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=_dumps({'error': code, 'message': message}),
        content_type='application/json',
    )


def status_for(error: EngineError) -> int:
    for error_class, status in ERROR_STATUS:
        if isinstance(error, error_class):
            return status
    return 400


class EngineAPI:
    """aiohttp application exposing engine queries and commands."""

    def __init__(self, otp_delivery, secret_key: str = None):
        self.secret_key = secret_key or Config.get(Config.IDENTITY_SECRET_KEY)
        if not self.secret_key:
            logger.critical("IDENTITY_SECRET_KEY is not configured!")
            raise ValueError("IDENTITY_SECRET_KEY must be set in environment")

        self.otp_delivery = otp_delivery
        self.app = web.Application(middlewares=[self.error_middleware, self.identity_middleware])
        self.request_count = 0
        self.error_count = 0
        self.start_time = None
        self.setup_routes()

    def setup_routes(self):
        router = self.app.router
        router.add_get('/health', self.handle_health)
        router.add_get('/sponsor/{code}', self.handle_sponsor)
        router.add_post('/register', self.handle_register)

        router.add_get('/wallet', self.handle_wallet)
        router.add_get('/transactions', self.handle_transactions)
        router.add_get('/tree', self.handle_tree)
        router.add_get('/downline', self.handle_downline)
        router.add_get('/rank', self.handle_rank)
        router.add_get('/income', self.handle_income)
        router.add_get('/withdrawal/eligibility', self.handle_eligibility)
        router.add_get('/investments', self.handle_investments)
        router.add_get('/requests', self.handle_my_requests)

        router.add_post('/deposits', self.handle_deposit)
        router.add_post('/withdrawals', self.handle_withdrawal)
        router.add_post('/requests/{id}/otp', self.handle_confirm_otp)
        router.add_post('/requests/{id}/otp/resend', self.handle_resend_otp)
        router.add_post('/requests/{id}/submit', self.handle_submit)
        router.add_post('/transfers', self.handle_transfer)
        router.add_post('/investments/from-package', self.handle_invest_from_package)

        router.add_get('/admin/requests', self.handle_admin_pending)
        router.add_post('/admin/requests/{id}/approve', self.handle_admin_approve)
        router.add_post('/admin/requests/{id}/reject', self.handle_admin_reject)
        router.add_post('/admin/credit', self.handle_admin_credit)

    # ═══════════════════════════════════════════════════════════════════
    # MIDDLEWARE
    # ═══════════════════════════════════════════════════════════════════

    @web.middleware
    async def error_middleware(self, request: web.Request, handler):
        """One DB session per request; engine errors mapped to HTTP."""
        self.request_count += 1
        session = get_session()
        request['session'] = session
        try:
            return await handler(request)
        except EngineError as e:
            session.rollback()
            status = status_for(e)
            if status >= 500:
                logger.error(f"{request.method} {request.path}: {e}")
                self.error_count += 1
            else:
                logger.info(f"{request.method} {request.path} → {status}: {e}")
            return json_response(e.to_dict(), status=status)
        except web.HTTPException:
            raise
        except Exception as e:
            session.rollback()
            logger.error(f"Error processing {request.method} {request.path}: {e}", exc_info=True)
            self.error_count += 1
            return json_response({'error': 'internal_error', 'message': 'Internal Server Error'}, status=500)
        finally:
            session.close()

    @web.middleware
    async def identity_middleware(self, request: web.Request, handler):
        if request.path in PUBLIC_PATHS or request.path.startswith(PUBLIC_PREFIXES):
            return await handler(request)

        raw_id = request.headers.get('X-User-ID', '')
        role = request.headers.get('X-User-Role', ROLE_USER)
        signature = request.headers.get('X-Identity-Signature', '')

        try:
            user_id = int(raw_id)
        except ValueError:
            return json_response({'error': 'unauthorized', 'message': 'Missing identity'}, status=401)

        if not verify_identity(user_id, role, signature, self.secret_key):
            logger.warning(f"Invalid identity signature for user {user_id} from {request.remote}")
            return json_response({'error': 'unauthorized', 'message': 'Invalid identity signature'}, status=401)

        request['actor'] = Actor(userId=user_id, role=role)
        return await handler(request)

    # ═══════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════

    @staticmethod
    async def _body(request: web.Request) -> dict:
        if not request.can_read_body:
            return {}
        try:
            data = await request.json()
        except json.JSONDecodeError:
            raise bad_request('invalid_json', 'Invalid JSON')
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _int_param(request: web.Request, name: str, default: int) -> int:
        try:
            return int(request.query.get(name, default))
        except ValueError:
            raise bad_request('invalid_parameter', f'{name} must be an integer')

    @staticmethod
    def _request_id(request: web.Request) -> int:
        try:
            return int(request.match_info['id'])
        except ValueError:
            raise web.HTTPNotFound(
                text=_dumps({'error': 'not_found', 'message': 'Request not found'}),
                content_type='application/json',
            )

    def _requests(self, session: Session) -> RequestService:
        return RequestService(session, OTPService(session, self.otp_delivery))

    # ═══════════════════════════════════════════════════════════════════
    # PUBLIC
    # ═══════════════════════════════════════════════════════════════════

    async def handle_health(self, request: web.Request) -> web.Response:
        return json_response({
            'status': 'ok',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'uptime': (datetime.now(timezone.utc) - self.start_time).total_seconds() if self.start_time else 0,
            'requests_total': self.request_count,
            'errors_total': self.error_count,
        })

    async def handle_sponsor(self, request: web.Request) -> web.Response:
        info = TreeService(request['session']).getSponsorInfo(request.match_info['code'])
        return json_response(info)

    async def handle_register(self, request: web.Request) -> web.Response:
        data = await self._body(request)
        if not data.get('email'):
            raise bad_request('invalid_parameter', 'email is required')

        user = await TreeService(request['session']).registerUser(
            email=data['email'],
            fullName=data.get('fullName'),
            sponsorCode=data.get('sponsorCode'),
        )
        return json_response({
            'userId': user.userID,
            'referralCode': user.referralCode,
            'sponsorId': user.sponsorID,
            'parentId': user.parentID,
            'position': user.position,
        }, status=201)

    # ═══════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════

    async def handle_wallet(self, request: web.Request) -> web.Response:
        actor = request['actor']
        return json_response(ReportService(request['session']).walletSummary(actor.userId))

    async def handle_transactions(self, request: web.Request) -> web.Response:
        actor = request['actor']
        result = ReportService(request['session']).history(
            actor.userId,
            page=self._int_param(request, 'page', 1),
            pageSize=min(self._int_param(request, 'pageSize', 20), 100),
            incomeSource=request.query.get('incomeSource'),
            status=request.query.get('status'),
            walletClass=request.query.get('walletClass'),
        )
        return json_response(result)

    async def handle_tree(self, request: web.Request) -> web.Response:
        actor = request['actor']
        snapshot = TreeService(request['session']).getTreeSnapshot(
            actor.userId, maxDepth=self._int_param(request, 'depth', 10)
        )
        return json_response(snapshot)

    async def handle_downline(self, request: web.Request) -> web.Response:
        actor = request['actor']
        view = TreeService(request['session']).getDownline(
            actor.userId, maxDepth=self._int_param(request, 'depth', 10)
        )
        nodes = [
            {
                'userId': node.user.userID,
                'fullName': node.user.fullName,
                'referralCode': node.user.referralCode,
                'depth': node.depth,
                'leg': node.leg,
                'parentId': node.user.parentID,
                'position': node.user.position,
            }
            for node in view
        ]
        return json_response({'userId': actor.userId, 'count': len(nodes), 'nodes': nodes})

    async def handle_rank(self, request: web.Request) -> web.Response:
        actor = request['actor']
        return json_response(await ReportService(request['session']).salaryStatus(actor.userId))

    async def handle_income(self, request: web.Request) -> web.Response:
        actor = request['actor']
        reports = ReportService(request['session'])
        breakdown = reports.incomeBreakdown(actor.userId)
        breakdown['teamIncomeByLevel'] = reports.teamIncomeByLevel(actor.userId)
        return json_response(breakdown)

    async def handle_eligibility(self, request: web.Request) -> web.Response:
        actor = request['actor']
        return json_response(ReportService(request['session']).withdrawalEligibility(actor.userId))

    async def handle_investments(self, request: web.Request) -> web.Response:
        actor = request['actor']
        return json_response({'investments': ReportService(request['session']).investmentList(actor.userId)})

    async def handle_my_requests(self, request: web.Request) -> web.Response:
        actor = request['actor']
        open_only = request.query.get('open', '').lower() in ('1', 'true', 'yes')
        requests = self._requests(request['session']).getUserRequests(actor.userId, openOnly=open_only)
        return json_response({'requests': requests})

    # ═══════════════════════════════════════════════════════════════════
    # COMMANDS
    # ═══════════════════════════════════════════════════════════════════

    async def handle_deposit(self, request: web.Request) -> web.Response:
        data = await self._body(request)
        result = await self._requests(request['session']).requestDeposit(
            request['actor'],
            amount=parse_amount(data.get('amount')),
            walletClass=data.get('walletClass', INVESTMENT),
            blockchain=data.get('blockchain'),
            address=data.get('address'),
            proofRef=data.get('proofRef'),
        )
        return json_response(result, status=201)

    async def handle_withdrawal(self, request: web.Request) -> web.Response:
        data = await self._body(request)
        investment_id = data.get('investmentId')
        if investment_id is not None:
            if not str(investment_id).isdigit():
                raise bad_request('invalid_parameter', 'investmentId must be an integer')
            investment_id = int(investment_id)
        amount = None if investment_id is not None else parse_amount(data.get('amount'))
        result = await self._requests(request['session']).requestWithdrawal(
            request['actor'],
            amount=amount,
            investmentId=investment_id,
            blockchain=data.get('blockchain'),
            address=data.get('address'),
        )
        return json_response(result, status=201)

    async def handle_confirm_otp(self, request: web.Request) -> web.Response:
        data = await self._body(request)
        result = await self._requests(request['session']).confirmOtp(
            request['actor'], self._request_id(request), str(data.get('code', ''))
        )
        return json_response(result)

    async def handle_resend_otp(self, request: web.Request) -> web.Response:
        result = await self._requests(request['session']).resendOtp(
            request['actor'], self._request_id(request)
        )
        return json_response(result)

    async def handle_submit(self, request: web.Request) -> web.Response:
        data = await self._body(request)
        result = await self._requests(request['session']).submitForReview(
            request['actor'], self._request_id(request), proofRef=data.get('proofRef')
        )
        return json_response(result)

    async def handle_transfer(self, request: web.Request) -> web.Response:
        data = await self._body(request)
        result = await self._requests(request['session']).transfer(
            request['actor'],
            recipientCode=str(data.get('recipientCode', '')),
            amount=parse_amount(data.get('amount')),
        )
        return json_response(result, status=201)

    async def handle_invest_from_package(self, request: web.Request) -> web.Response:
        data = await self._body(request)
        result = await InvestmentService(request['session']).investFromPackage(
            request['actor'], parse_amount(data.get('amount'))
        )
        return json_response(result, status=201)

    # ═══════════════════════════════════════════════════════════════════
    # ADMIN
    # ═══════════════════════════════════════════════════════════════════

    async def handle_admin_pending(self, request: web.Request) -> web.Response:
        pending = self._requests(request['session']).getPendingRequests(
            request['actor'], kind=request.query.get('kind')
        )
        return json_response({'requests': pending})

    async def handle_admin_approve(self, request: web.Request) -> web.Response:
        result = await self._requests(request['session']).approve(
            request['actor'], self._request_id(request)
        )
        return json_response(result)

    async def handle_admin_reject(self, request: web.Request) -> web.Response:
        data = await self._body(request)
        result = await self._requests(request['session']).reject(
            request['actor'], self._request_id(request), reason=data.get('reason')
        )
        return json_response(result)

    async def handle_admin_credit(self, request: web.Request) -> web.Response:
        data = await self._body(request)
        codes = data.get('referralCodes') or []
        if isinstance(codes, str):
            codes = [c for c in codes.replace(',', ' ').split() if c]
        if not codes:
            raise bad_request('invalid_parameter', 'referralCodes is required')

        results = await InvestmentService(request['session']).adminCredit(
            request['actor'],
            referralCodes=codes,
            amount=parse_amount(data.get('amount')),
            walletClass=data.get('walletClass', INVESTMENT),
            note=data.get('note'),
        )
        return json_response({'credits': results}, status=201)

    # ═══════════════════════════════════════════════════════════════════
    # SERVER
    # ═══════════════════════════════════════════════════════════════════

    async def start(self, host: str = None, port: int = None) -> web.AppRunner:
        host = host or Config.get(Config.API_HOST, '127.0.0.1')
        port = port or Config.get(Config.API_PORT, 8080)
        self.start_time = datetime.now(timezone.utc)

        if host == '0.0.0.0':
            logger.warning("⚠️ Engine API listening on all interfaces!")

        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, host, int(port))
        await site.start()

        logger.info(f"Engine API started on {host}:{port}")
        return runner
