#!/usr/bin/env python3
"""
Diagnostic script to identify what's not working
"""
import os
import sys

import redis
import requests

from services.translation.client import FunctionErrorKind, classify_response

REALTIME_URL = os.getenv("REALTIME_URL", "http://localhost:8010")
TRANSLATION_URL = os.getenv("TRANSLATION_URL", "http://localhost:8011")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
FUNCTIONS_URL = os.getenv("FUNCTIONS_URL", "http://localhost:54321/functions/v1").rstrip("/")
FUNCTIONS_ANON_KEY = os.getenv("FUNCTIONS_ANON_KEY")


def check_redis():
    """Check if Redis answers PING"""
    print("🔍 Checking Redis...")
    try:
        client = redis.from_url(REDIS_URL, socket_connect_timeout=3)
        if client.ping():
            print(f"✅ Redis reachable at {REDIS_URL}")
            return True
        print("❌ Redis did not answer PING")
        return False
    except redis.RedisError as e:
        print(f"❌ Cannot reach Redis: {e}")
        return False


def check_service(name, base_url):
    """Check a service /health endpoint and the dependencies it reports"""
    print(f"\n🌐 Checking {name} service...")
    try:
        response = requests.get(f"{base_url}/health", timeout=5)
    except requests.exceptions.ConnectionError:
        print(f"❌ Cannot connect to {name} at {base_url} - connection refused")
        return False
    except requests.exceptions.Timeout:
        print(f"❌ {name} timeout - not responding")
        return False
    if response.status_code != 200:
        print(f"❌ {name} returned status {response.status_code}")
        return False
    data = response.json()
    down = [dep for dep, up in data.get("dependencies", {}).items() if not up]
    if down:
        print(f"⚠️ {name} is up but degraded: {', '.join(down)} unavailable")
        return False
    print(f"✅ {name} healthy: {data}")
    return True


def check_function(function, payload, required_field):
    """POST a probe request to an AI function and classify the answer"""
    print(f"\n🤖 Checking {function} function...")
    headers = {"Content-Type": "application/json"}
    if FUNCTIONS_ANON_KEY:
        headers["Authorization"] = f"Bearer {FUNCTIONS_ANON_KEY}"
    try:
        response = requests.post(f"{FUNCTIONS_URL}/{function}", json=payload, headers=headers, timeout=30)
    except requests.exceptions.RequestException as e:
        print(f"❌ Network error calling {function}: {e}")
        return False

    result = classify_response(function, response.status_code, response.text, required_field)
    if result.error is None:
        print(f"✅ {function} working")
        return True
    print(f"❌ {function}: {result.error.message}")
    if result.error.kind == FunctionErrorKind.NOT_DEPLOYED:
        print(f"   → The function is not deployed. Deploy it with: supabase functions deploy {function}")
    elif result.error.kind == FunctionErrorKind.QUOTA_EXCEEDED:
        print("   → The function is deployed but the OpenAI account is out of credits")
    elif result.error.kind == FunctionErrorKind.INVALID_KEY:
        print("   → Set a valid OPENAI_API_KEY secret for the functions")
    return False


def check_translation_function():
    return check_function(
        "ai-translation",
        {
            "meetingId": "diagnostic_test",
            "sourceText": "Hello, how are you?",
            "sourceLanguage": "en",
            "targetLanguage": "es",
            "speaker": "Diagnostic",
        },
        "translatedText",
    )


def check_summary_function():
    return check_function(
        "ai-summary",
        {"meetingId": "diagnostic_test", "participants": [{"name": "Diagnostic"}]},
        "summary",
    )


def main():
    print("🔧 Realtime Sync Diagnostic Tool")
    print("=" * 50)

    tests = [
        ("Redis", check_redis),
        ("Realtime Service", lambda: check_service("realtime", REALTIME_URL)),
        ("Translation Service", lambda: check_service("translation", TRANSLATION_URL)),
        ("Translation Function", check_translation_function),
        ("Summary Function", check_summary_function),
    ]

    results = {}
    for test_name, test_func in tests:
        try:
            results[test_name] = test_func()
        except Exception as e:
            print(f"❌ {test_name} failed with exception: {e}")
            results[test_name] = False

    print("\n📊 Diagnostic Summary:")
    print("=" * 30)
    for test_name, result in results.items():
        status = "✅ PASS" if result else "❌ FAIL"
        print(f"  {test_name}: {status}")

    all_passed = all(results.values())
    if all_passed:
        print("\n🎉 All checks passed!")
    else:
        print("\n⚠️ Some checks failed. Here's what to check:")
        if not results.get("Redis"):
            print("  • Redis is not running - start it with: docker compose up -d redis")
        if not results.get("Realtime Service"):
            print("  • Start the realtime service: uvicorn services.realtime.main:app --port 8010")
        if not results.get("Translation Service"):
            print("  • Start the translation service: uvicorn services.translation.main:app --port 8011")
    return 0 if all_passed else 1


if __name__ == "__main__":
    sys.exit(main())
