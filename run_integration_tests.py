#!/usr/bin/env python3
"""
Simple test runner for QuizCache.
Runs import checks and each test group to validate the system works.
"""

import sys
import subprocess
import time


def run_test_command(command: list, description: str) -> bool:
    """Run a test command and return success status."""
    print(f"🧪 {description}...")

    try:
        start_time = time.time()
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=120  # 2 minute timeout
        )
        end_time = time.time()

        duration = end_time - start_time

        if result.returncode == 0:
            print(f"✅ {description} - PASSED ({duration:.1f}s)")
            return True
        else:
            print(f"❌ {description} - FAILED ({duration:.1f}s)")
            print(f"Error output: {result.stdout[-2000:]}{result.stderr}")
            return False

    except subprocess.TimeoutExpired:
        print(f"⏰ {description} - TIMEOUT (120s)")
        return False
    except Exception as e:
        print(f"💥 {description} - ERROR: {e}")
        return False


def main():
    """Run test groups."""
    print("🧠 QuizCache - Test Runner")
    print("=" * 50)

    test_commands = [
        # Import checks
        ([sys.executable, "-c", "from quizcache.caching import CacheService; print('✅ Cache service imports')"],
         "Import Test - Cache Service"),

        ([sys.executable, "-c", "from quizcache.config import get_settings; s = get_settings(); print(f'✅ Config loaded: {s.environment}')"],
         "Configuration Test"),

        # Test groups
        ([sys.executable, "-m", "pytest", "tests/test_cache_manager.py", "tests/test_dependency_graph.py", "-q", "--tb=short"],
         "Unit Tests - Cache Store"),

        ([sys.executable, "-m", "pytest", "tests/test_invalidation.py", "-q", "--tb=short"],
         "Unit Tests - Invalidation Engine"),

        ([sys.executable, "-m", "pytest", "tests/test_cache_warming.py", "tests/test_access_tracker.py", "-q", "--tb=short"],
         "Unit Tests - Warming Engine"),

        ([sys.executable, "-m", "pytest", "tests/test_cache_service.py", "-q", "--tb=short"],
         "Integration Tests - Cache Service"),

        ([sys.executable, "-m", "pytest", "tests/test_config.py", "tests/test_logging_config.py",
          "tests/test_metrics_collector.py", "-q", "--tb=short"],
         "Unit Tests - Configuration and Monitoring"),
    ]

    passed = 0
    failed = 0

    for command, description in test_commands:
        if run_test_command(command, description):
            passed += 1
        else:
            failed += 1
        print()  # Empty line for readability

    # Summary
    total = passed + failed
    success_rate = (passed / total * 100) if total > 0 else 0

    print("=" * 50)
    print("📊 TEST SUMMARY")
    print("=" * 50)
    print(f"Total Groups: {total}")
    print(f"Passed: {passed} ✅")
    print(f"Failed: {failed} {'❌' if failed > 0 else '✅'}")
    print(f"Success Rate: {success_rate:.1f}%")

    if failed == 0:
        print("\n🎉 All test groups passed!")
        return 0
    else:
        print(f"\n❌ {failed} group(s) failed")
        return 1


if __name__ == "__main__":
    exit_code = main()
    sys.exit(exit_code)
