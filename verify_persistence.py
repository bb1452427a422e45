import time
import subprocess
import httpx
import sys
import os
import signal

BASE_URL = "http://127.0.0.1:8000"
API_PREFIX = "/v1"
DRIVER_ID = "persist_driver"

def start_server():
    return subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "kanghoo.app.main:app", "--host", "127.0.0.1", "--port", "8000"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env={**os.environ, "HISTORY_ENABLED": "True"}
    )

def stop_server(proc):
    proc.send_signal(signal.SIGTERM)
    proc.wait()

def wait_for_server(retries=10, delay=2):
    url = f"{BASE_URL}/health"
    print(f"Waiting for server at {url}...")
    for i in range(retries):
        try:
            resp = httpx.get(url)
            if resp.status_code == 200:
                print("✅ Server is up!")
                return True
        except httpx.ConnectError:
            pass
        time.sleep(delay)
    print("❌ Server failed to start.")
    return False

def run_verification():
    # 1. Start Server (First Run)
    print("\n--- [Step 1] Starting Server (Initial) ---")
    proc = start_server()

    try:
        if not wait_for_server():
            server_logs = proc.communicate(timeout=2)
            print("Server Stdout:", server_logs[0].decode())
            print("Server Stderr:", server_logs[1].decode())
            raise Exception("Server start failed")

        # 2. Report a location
        print("\n--- [Step 2] Reporting Location (Persistence Test) ---")
        payload = {"driverId": DRIVER_ID, "routeId": "route_persist", "latitude": -23.5505, "longitude": -46.6333}
        resp = httpx.post(f"{BASE_URL}{API_PREFIX}/locations", json=payload)

        if resp.status_code == 201:
            print("✅ Location Recorded")
            print(resp.json())
        else:
            print(f"❌ Location Failed: {resp.status_code} {resp.text}")
            raise Exception("Location report failed")

    finally:
        print("\n--- [Step 3] Stopping Server ---")
        stop_server(proc)

    time.sleep(2) # Wait for port release

    # 3. Restart Server
    print("\n--- [Step 4] Restarting Server (Verification) ---")
    proc2 = start_server()

    try:
        if not wait_for_server():
            raise Exception("Server restart failed")

        # 4. The in-memory position is gone, the history row is not
        print("\n--- [Step 5] Checking Current Location (Expected 404) ---")
        resp = httpx.get(f"{BASE_URL}{API_PREFIX}/drivers/{DRIVER_ID}/location")
        print(f"Current location status: {resp.status_code}")

        print("\n--- [Step 6] Reading History (Post-Restart) ---")
        resp = httpx.get(f"{BASE_URL}{API_PREFIX}/drivers/{DRIVER_ID}/history", params={"limit": 5})
        if resp.status_code == 200 and resp.json().get("total", 0) > 0:
            print("✅ History Survived Restart")
            print(resp.json()["data"][0])
        else:
            print(f"❌ History Missing (Persistence Issue?): {resp.status_code} {resp.text}")
            raise Exception("History lost after restart")

    finally:
        print("\n--- [Step 7] Stopping Server ---")
        stop_server(proc2)

if __name__ == "__main__":
    run_verification()
