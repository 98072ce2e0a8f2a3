"""Constants for the Stellantis remote control integration."""

from __future__ import annotations

from typing import Final

DOMAIN: Final = "stellantis_remote"

# Configuration keys
CONF_BRAND: Final = "brand"
CONF_BRANDS: Final = "brands"
CONF_COUNTRY: Final = "country"
CONF_CLIENT_ID: Final = "client_id"
CONF_CLIENT_SECRET: Final = "client_secret"
CONF_OAUTH_URL: Final = "oauth_url"
CONF_CUSTOMER_ID: Final = "customer_id"
CONF_ACCESS_TOKEN: Final = "access_token"
CONF_REFRESH_TOKEN: Final = "refresh_token"
CONF_EXPIRES_IN: Final = "expires_in"
CONF_REMOTE_CLIENT_ID: Final = "remote_client_id"
CONF_VEHICLES: Final = "vehicles"
CONF_VIN: Final = "vin"
CONF_TOKEN_CHECK_INTERVAL: Final = "token_check_interval"

BRANDS: Final = ("MyPeugeot", "MyCitroen", "MyDS", "MyOpel", "MyVauxhall")

DEFAULT_TOKEN_CHECK_INTERVAL: Final = 900  # 15 minutes
DEFAULT_EXPIRES_IN: Final = 3600

# Backend endpoints
OTP_URL: Final = "https://otp.mpsa.com/iwws/MAC"
OTP_HOST: Final = "otp.mpsa.com"
REMOTE_TOKEN_URL: Final = "https://mw-web-bff.mpsa.com/v1/oauth/token"
SMS_CODE_URL: Final = "https://api.groupe-psa.com/applications/cvs/v4/mobile/smsCode"
OAUTH_TOKEN_PATH: Final = "am/oauth2/access_token"

# MQTT broker
MQTT_HOST: Final = "mwa.mpsa.com"
MQTT_PORT: Final = 8885
MQTT_KEEPALIVE: Final = 60
MQTT_QOS: Final = 1
MQTT_USERNAME: Final = "IMA_OAUTH_ACCESS_TOKEN"
MQTT_REQUEST_TOPIC: Final = "psa/RemoteServices/to/cid/"
MQTT_RESPONSE_TOPIC: Final = "psa/RemoteServices/from/cid/"
MQTT_EVENT_TOPIC: Final = "psa/RemoteServices/events/MPHRTServices/"

# OTP protocol
PUBLIC_EXPONENT: Final = 0x11
OAEP_BLOCK_SIZE: Final = 128
MAC_ID: Final = "bb8e981582b0f31353108fb020bead1c"
PROTOCOL_VERSION: Final = "0.2.11"
GENERATOR_VERSION: Final = f"Generator-1.0/{PROTOCOL_VERSION}"
CLIENT_NAME: Final = "Android SDK built for x86_64 / UNKNOWN"
OTP_USER_AGENT: Final = (
    "Dalvik/2.1.0 (Linux; U; Android 8.0.0; Android SDK built for x86_64 "
    "Build/OSR1.180418.004)"
)
OTP_DAILY_QUOTA: Final = 6  # observed backend limit per rolling 24 hours

# Timeouts (seconds)
OTP_TIMEOUT: Final = 10
HTTP_TIMEOUT: Final = 30
COMMAND_TIMEOUT: Final = 30
TOKEN_REFRESH_MARGIN: Final = 300  # refresh when expiring within 5 minutes

# Storage
STORAGE_KEY: Final = DOMAIN
STORAGE_VERSION: Final = 1
TOKEN_STORE_PREFIX: Final = "stellantis_tokens_"
OTP_STORE_PREFIX: Final = "stellantis_tokens_otpState_"


def build_realm(brand: str) -> str:
    """Return the backend realm for a brand (MyPeugeot -> clientsB2CPeugeot)."""
    return f"clientsB2C{brand.replace('My', '', 1)}"
