# services/platform_gateway.py
"""
Messaging platform gateway.

Every outbound call to the conversational platform goes through here:
domain discovery, application and consumer tokens, conversation creation,
message publishing and conversation/dialog close. Transient failures are
retried with tenacity; anything else surfaces as PlatformError.
"""

import asyncio
import json
import uuid
from typing import Dict, List, Optional, Any
from urllib.parse import urlencode

import aiohttp
from loguru import logger
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from config import settings
from core.exceptions import PlatformError, PlatformUnavailableError, MissingIdentifierError
from services.cache_service import CacheService
from utils.helpers import decode_jwt_payload


class PlatformService:
    """Service names published by the domain discovery endpoint"""
    SENTINEL = "sentinel"
    IDP = "idp"
    ASYNC_MESSAGING = "asyncMessagingEnt"


CLIENT_FEATURES = [
    "AUTO_MESSAGES",
    "RICH_CONTENT",
    "CO_BROWSE",
    "PHOTO_SHARING",
    "QUICK_REPLIES",
    "MULTI_DIALOG",
]

RETRYABLE_ERRORS = (PlatformUnavailableError, aiohttp.ClientConnectionError, asyncio.TimeoutError)


class PlatformGateway:
    """aiohttp client for the messaging platform REST APIs"""

    def __init__(
        self,
        cache: CacheService,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: Optional[int] = None,
        csds_url_template: Optional[str] = None,
    ):
        self.cache = cache
        self.client_id = client_id or settings.platform_client_id
        self.client_secret = client_secret or settings.platform_client_secret
        self.timeout = timeout or settings.platform_request_timeout
        self.csds_url_template = csds_url_template or settings.csds_url_template
        self.session: Optional[aiohttp.ClientSession] = None

    async def initialize(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        logger.info("✅ Platform gateway initialized")

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    # ==========================================
    # HTTP
    # ==========================================

    @retry(
        stop=stop_after_attempt(settings.platform_retry_attempts),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        url: str,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        if self.session is None or self.session.closed:
            await self.initialize()

        async with self.session.request(method, url, json=json_body, headers=headers) as response:
            text = await response.text()

            if response.status == 429 or response.status >= 500:
                raise PlatformUnavailableError(
                    f"{method} {url} failed with {response.status}: {text[:200]}",
                    status_code=response.status,
                )
            if response.status >= 400:
                raise PlatformError(
                    f"{method} {url} failed with {response.status}: {text[:200]}",
                    status_code=response.status,
                )

            if not text:
                return None
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return text

    @staticmethod
    def _headers(app_token: str, consumer_token: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Authorization": app_token}
        if consumer_token:
            headers["X-LP-ON-BEHALF"] = consumer_token
        return headers

    # ==========================================
    # DOMAINS AND TOKENS
    # ==========================================

    async def get_domains(self, account_id: str) -> List[Dict[str, str]]:
        if not account_id:
            raise MissingIdentifierError("account_id is required to resolve domains")

        key = CacheService.domains_key(account_id)
        cached = await self.cache.get(key)
        if cached:
            return cached

        url = self.csds_url_template.format(account_id=account_id)
        try:
            data = await self._request("GET", url)
        except PlatformError as e:
            logger.error(f"❌ Domain discovery failed for {account_id}: {e}")
            return []

        domains = data.get("baseURIs") if isinstance(data, dict) else None
        if not domains:
            logger.error(f"❌ No baseURIs returned for account {account_id}")
            return []

        await self.cache.set(key, domains, ttl=settings.domain_cache_ttl)
        return domains

    async def resolve_domain(self, account_id: str, service_name: str) -> Optional[str]:
        for entry in await self.get_domains(account_id):
            if entry.get("service") == service_name:
                return entry.get("baseURI")
        logger.warning(f"⚠️ Domain not found for service {service_name} on account {account_id}")
        return None

    async def get_app_token(self, account_id: str) -> Optional[str]:
        """Application bearer token via OAuth2 client credentials, cached until expiry"""
        key = CacheService.app_token_key(account_id)
        cached = await self.cache.get(key)
        if cached:
            return str(cached)

        if not self.client_id or not self.client_secret:
            logger.error("❌ Platform client credentials are not configured")
            return None

        domain = await self.resolve_domain(account_id, PlatformService.SENTINEL)
        if not domain:
            return None

        query = urlencode({
            "v": "1.0",
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        })
        url = f"https://{domain}/sentinel/api/account/{account_id}/app/token?{query}"
        data = await self._request("POST", url, headers={"Content-Type": "application/x-www-form-urlencoded"})

        token = (data or {}).get("access_token") if isinstance(data, dict) else None
        if not token:
            logger.error(f"❌ Failed to retrieve app token for account {account_id}")
            return None

        ttl = data.get("expires_in") or settings.app_token_default_ttl
        await self.cache.set(key, token, ttl=int(ttl))
        return token

    async def register_consumer(
        self,
        account_id: str,
        app_token: str,
        external_consumer_id: Optional[str] = None,
    ) -> Dict[str, Optional[str]]:
        """Obtain a consumer token for a (possibly new) external consumer id"""
        if not app_token:
            raise MissingIdentifierError("app token is required to register a consumer", account_id=account_id)

        ext_consumer_id = external_consumer_id or str(uuid.uuid4())
        key = CacheService.consumer_token_key(ext_consumer_id)

        cached = await self.cache.get(key)
        if isinstance(cached, dict) and cached.get("consumer_token"):
            return cached

        domain = await self.resolve_domain(account_id, PlatformService.IDP)
        if not domain:
            raise PlatformError("Domain not found for service: idp", account_id=account_id)

        url = f"https://{domain}/api/account/{account_id}/consumer?v=1.0"
        data = await self._request(
            "POST", url,
            json_body={"ext_consumer_id": ext_consumer_id},
            headers=self._headers(app_token),
        )

        token = (data or {}).get("token") if isinstance(data, dict) else None
        if not token:
            raise PlatformError("Consumer registration returned no token", account_id=account_id)

        identity = {
            "consumer_token": token,
            "lp_consumer_id": decode_jwt_payload(token).get("lp_consumer_id"),
            "ext_consumer_id": ext_consumer_id,
        }
        await self.cache.set(key, identity, ttl=settings.consumer_token_ttl)
        return identity

    # ==========================================
    # MESSAGING
    # ==========================================

    @staticmethod
    def build_create_request(account_id: str, skill_id: Optional[int], profile: Dict[str, Any]) -> List[Dict[str, Any]]:
        """SetUserProfile + ConsumerRequestConversation request pair"""
        profile_request: Dict[str, Any] = {
            "kind": "req",
            "id": "1",
            "type": "userprofile.SetUserProfile",
            "body": {},
        }

        if profile.get("first_name"):
            profile_request["body"] = {
                "authenticatedData": {
                    "lp_sdes": [
                        {
                            "type": "personal",
                            "personal": {
                                "firstname": profile.get("first_name"),
                                "lastname": profile.get("last_name"),
                                "language": "en-US",
                                "contacts": [{"email": profile.get("email")}],
                            },
                        },
                        {
                            "type": "ctmrinfo",
                            "info": {
                                "cstatus": profile.get("scenario") or "",
                                "ctype": profile.get("persona") or "",
                            },
                        },
                    ]
                }
            }

        conversation_request = {
            "kind": "req",
            "id": "2",
            "type": "cm.ConsumerRequestConversation",
            "body": {
                "ttrDefName": "NORMAL",
                "channelType": "MESSAGING",
                "brandId": profile.get("brand_id") or account_id,
                "skillId": skill_id,
                "conversationContext": {
                    "interactionContextId": str(uuid.uuid4()),
                    "type": "SharkContext",
                    "lang": "en-US",
                    "clientProperties": {
                        "type": ".ClientProperties",
                        "appId": "webAsync",
                        "integrationVersion": "3.0.5",
                        "integration": "WEB_SDK",
                        "features": CLIENT_FEATURES,
                    },
                },
            },
        }

        return [profile_request, conversation_request]

    @staticmethod
    def build_publish_request(conversation_id: str, dialog_id: str, text: str) -> Dict[str, Any]:
        return {
            "kind": "req",
            "id": "1",
            "type": "ms.PublishEvent",
            "body": {
                "conversationId": conversation_id,
                "dialogId": dialog_id,
                "event": {
                    "type": "ContentEvent",
                    "contentType": "text/plain",
                    "message": text,
                },
            },
        }

    @staticmethod
    def build_close_request(conversation_id: str, dialog_id: Optional[str] = None) -> Dict[str, Any]:
        """Whole-conversation close, or dialog close when a dialog id is given"""
        if not dialog_id:
            return {
                "kind": "req",
                "id": "1",
                "type": "cm.UpdateConversationField",
                "body": {
                    "conversationId": conversation_id,
                    "conversationField": {
                        "field": "ConversationStateField",
                        "conversationState": "CLOSE",
                    },
                },
            }

        return {
            "kind": "req",
            "id": "1",
            "type": "cm.UpdateConversationField",
            "body": {
                "conversationId": conversation_id,
                "conversationField": [
                    {
                        "field": "DialogChange",
                        "type": "UPDATE",
                        "dialog": {
                            "dialogId": dialog_id,
                            "state": "CLOSE",
                            "closedCause": "Closed by consumer",
                        },
                    }
                ],
            },
        }

    async def _messaging_url(self, account_id: str, path: str) -> str:
        domain = await self.resolve_domain(account_id, PlatformService.ASYNC_MESSAGING)
        if not domain:
            raise PlatformError("Domain not found for service: asyncMessagingEnt", account_id=account_id)
        return f"https://{domain}/api/account/{account_id}/messaging/consumer/conversation{path}?v=3"

    async def create_conversation(
        self,
        account_id: str,
        app_token: str,
        consumer_token: str,
        skill_id: Optional[int],
        profile: Dict[str, Any],
    ) -> Optional[str]:
        url = await self._messaging_url(account_id, "")
        data = await self._request(
            "POST", url,
            json_body=self.build_create_request(account_id, skill_id, profile),
            headers=self._headers(app_token, consumer_token),
        )

        for item in data or []:
            if isinstance(item, dict) and item.get("reqId") == "2":
                return (item.get("body") or {}).get("conversationId")
        return None

    async def publish_message(
        self,
        account_id: str,
        app_token: str,
        consumer_token: str,
        conversation_id: str,
        dialog_id: str,
        text: str,
    ) -> Any:
        url = await self._messaging_url(account_id, "/send")
        return await self._request(
            "POST", url,
            json_body=self.build_publish_request(conversation_id, dialog_id, text),
            headers=self._headers(app_token, consumer_token),
        )

    async def close_conversation(
        self,
        account_id: str,
        app_token: str,
        consumer_token: str,
        conversation_id: str,
        dialog_id: Optional[str] = None,
    ) -> Any:
        url = await self._messaging_url(account_id, "/send")
        return await self._request(
            "POST", url,
            json_body=self.build_close_request(conversation_id, dialog_id),
            headers=self._headers(app_token, consumer_token),
        )
