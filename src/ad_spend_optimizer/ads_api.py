"""
Advertising API mutation adapter
Pushes bids, budgets, placement adjustments, status changes and negative
keywords to the Amazon Advertising API.
"""

import os
import logging
from typing import Any, Dict, List, Optional

import requests

from .interfaces import MutationClient, MutationResult
from .models import ActionType, ControlChange, Segment, SegmentKind

NEGATION_MATCH_TYPES = {
    'negated_exact': 'negativeExact',
    'negated_phrase': 'negativePhrase',
}


class AdsApiClient:
    """
    Authenticated HTTP client for the Advertising API

    Credentials come from the environment (ADS_API_BASE_URL, ADS_API_TOKEN,
    ADS_API_CLIENT_ID, ADS_API_PROFILE_ID) or the config dictionary.
    """

    def __init__(self, config: Dict[str, Any]):
        self.logger = logging.getLogger(__name__)

        self.base_url = (os.getenv('ADS_API_BASE_URL') or config.get('ads_api_base_url')
                         or 'https://advertising-api.amazon.com')
        self.token = os.getenv('ADS_API_TOKEN') or config.get('ads_api_token')
        self.client_id = os.getenv('ADS_API_CLIENT_ID') or config.get('ads_api_client_id')
        self.profile_id = os.getenv('ADS_API_PROFILE_ID') or config.get('ads_api_profile_id')
        self.timeout = config.get('mutation_timeout_seconds', 30)

        if not all([self.token, self.client_id, self.profile_id]):
            raise ValueError(
                "Missing required Advertising API credentials. Set environment variables: "
                "ADS_API_TOKEN, ADS_API_CLIENT_ID, ADS_API_PROFILE_ID"
            )

    def request(self, method: str, endpoint: str, data: Optional[Any] = None) -> Any:
        """
        Make an authenticated request

        Args:
            method: HTTP method (PUT, POST)
            endpoint: API endpoint
            data: JSON body

        Returns:
            Response JSON
        """
        headers = {
            'Authorization': f'Bearer {self.token}',
            'Amazon-Advertising-API-ClientId': self.client_id,
            'Amazon-Advertising-API-Scope': str(self.profile_id),
            'Content-Type': 'application/json'
        }
        url = f"{self.base_url}{endpoint}"

        try:
            response = requests.request(method, url, headers=headers, json=data, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            self.logger.error(f"HTTP error in API request: {e}")
            self.logger.error(f"Response: {e.response.text if e.response is not None else 'No response'}")
            raise
        except requests.exceptions.RequestException as e:
            self.logger.error(f"Error making API request: {e}")
            raise


class AdsApiMutationClient(MutationClient):
    """MutationClient over the v2 Sponsored Products endpoints"""

    def __init__(self, config: Dict[str, Any], client: Optional[AdsApiClient] = None):
        self.logger = logging.getLogger(__name__)
        self.client = client or AdsApiClient(config)

    def apply_control_value(self, segment: Segment, change: ControlChange) -> MutationResult:
        method, endpoint, payload = self.build_request(segment, change)
        self.logger.info(f"{change.action.value} on {segment.kind.value} {segment.segment_id} -> {endpoint}")
        response = self.client.request(method, endpoint, data=payload)
        return self.parse_response(response)

    def build_request(self, segment: Segment, change: ControlChange):
        """(method, endpoint, payload) for one change"""
        state = change.state or segment.state

        if segment.kind == SegmentKind.SEARCH_TERM:
            if change.action == ActionType.ROLLBACK or state not in NEGATION_MATCH_TYPES:
                # Reverting a negation archives the negative keyword
                return 'PUT', '/v2/sp/negativeKeywords', [{
                    'campaignId': segment.campaign_id,
                    'keywordText': segment.value,
                    'state': 'archived',
                }]
            return 'POST', '/v2/sp/negativeKeywords', [{
                'campaignId': segment.campaign_id,
                'keywordText': segment.value,
                'matchType': NEGATION_MATCH_TYPES[state],
                'state': 'enabled',
            }]

        if segment.kind == SegmentKind.KEYWORD:
            return 'PUT', '/v2/sp/keywords', [{
                'keywordId': segment.segment_id,
                'state': state,
                'bid': round(change.value, 2),
            }]

        if segment.kind == SegmentKind.PRODUCT_TARGET:
            return 'PUT', '/v2/sp/targets', [{
                'targetId': segment.segment_id,
                'state': state,
                'bid': round(change.value, 2),
            }]

        if segment.kind == SegmentKind.PLACEMENT:
            return 'PUT', '/v2/sp/campaigns', [{
                'campaignId': segment.campaign_id,
                'bidding': {
                    'adjustments': [{'predicate': segment.value, 'percentage': round(change.value)}]
                },
            }]

        return 'PUT', '/v2/sp/campaigns', [{
            'campaignId': segment.campaign_id,
            'state': state,
            'dailyBudget': round(change.value, 2),
        }]

    @staticmethod
    def parse_response(response: Any) -> MutationResult:
        """The v2 endpoints answer with one status entry per submitted item"""
        items: List[Dict[str, Any]] = response if isinstance(response, list) else [response or {}]
        for item in items:
            code = item.get('code', 'SUCCESS')
            if code != 'SUCCESS':
                return MutationResult(False, f"{code}: {item.get('details', 'no details')}")
        return MutationResult(True)
