#!/usr/bin/env python3
import unittest
from unittest.mock import MagicMock, patch

from config import AppConfig
from services.twitter_client import TwitterClient


class TestTwitterClient(unittest.TestCase):
    """Unit tests for the TwitterClient."""

    def setUp(self):
        """Set up a mock config for testing."""
        self.mock_config = AppConfig(
            db_path=':memory:',
            interval=60,
            max_workers=1,
            lease_ttl=300.0,
            freshness_bound=900.0,
            confirmation_timeout=180.0,
            pending_timeout=900.0,
            scheduler_enabled=False,
            refresh_opportunities=False,
            networks=[],
            protocols=[],
            min_tvl=0.0,
            telegram_enabled=False,
            telegram_bot_token=None,
            telegram_chat_id=None,
            daily_summary_enabled=False,
            twitter_enabled=True,
            twitter_api_key='test_key',
            twitter_api_secret='test_secret',
            twitter_access_token='test_token',
            twitter_access_token_secret='test_token_secret',
            coingecko_api_key=None,
            trade_rpc_url=None,
            trade_wallet_address=None,
            trading_private_key=None,
            create_strategy=None,
            list_strategies=False,
            show_executions=False,
            executions_limit=20,
            strategy_id=None,
        )

    @patch('tweepy.Client')
    def test_post_tweet(self, mock_tweepy_client):
        """Test that the post_tweet method calls the tweepy client with the correct text."""
        mock_client_instance = MagicMock()
        mock_tweepy_client.return_value = mock_client_instance

        twitter_client = TwitterClient(self.mock_config)
        tweet_text = "Deposited 100 USDC into aave-v3 on base."

        twitter_client.post_tweet(tweet_text)

        mock_tweepy_client.assert_called_once_with(
            consumer_key='test_key',
            consumer_secret='test_secret',
            access_token='test_token',
            access_token_secret='test_token_secret'
        )
        mock_client_instance.create_tweet.assert_called_once_with(text=tweet_text)

    def test_initialization_raises_error_if_credentials_missing(self):
        """Test that ValueError is raised if Twitter credentials are not set."""
        for field in ('twitter_api_key', 'twitter_access_token_secret'):
            with self.subTest(field=field):
                with self.assertRaises(ValueError):
                    TwitterClient(self.mock_config._replace(**{field: None}))


if __name__ == '__main__':
    unittest.main()
