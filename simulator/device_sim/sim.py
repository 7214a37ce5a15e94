"""Wearable fleet simulator.

Publishes heart rate, status and fall messages for DEVICE_COUNT fake
wearables on the device/{serial}/{kind} topics. Devices occasionally lose
power (they just go quiet) or drop Wi-Fi (they announce offline first), so
the live channel watchdog and offline handling can be exercised end to end.
"""
import asyncio
import json
import math
import os
import random
import time
from datetime import datetime, timezone

import paho.mqtt.client as mqtt

MQTT_HOST = os.getenv("MQTT_HOST", "localhost")
MQTT_PORT = int(os.getenv("MQTT_PORT", "1883"))

DEVICE_COUNT = int(os.getenv("DEVICE_COUNT", "3"))
SERIAL_PREFIX = os.getenv("SERIAL_PREFIX", "ESP32-SIM")
FIRMWARE_VERSION = os.getenv("FIRMWARE_VERSION", "1.0.0")

HEART_RATE_EVERY = float(os.getenv("HEART_RATE_INTERVAL_SECONDS", "5"))
STATUS_EVERY = float(os.getenv("STATUS_INTERVAL_SECONDS", "30"))
JITTER_FRACTION = float(os.getenv("INTERVAL_JITTER_PCT", "0.1"))
STATS_EVERY = float(os.getenv("LOG_STATS_SECONDS", "30"))

ABNORMAL_HR_CHANCE = float(os.getenv("ABNORMAL_HR_CHANCE", "0.01"))
FALL_CHANCE = float(os.getenv("FALL_CHANCE", "0.002"))
POWER_LOSS_CHANCE = float(os.getenv("POWER_LOSS_CHANCE", "0.001"))
WIFI_DROP_CHANCE = float(os.getenv("WIFI_DROP_CHANCE", "0.002"))
OUTAGE_SECONDS = (
    float(os.getenv("DOWNTIME_MIN_SECONDS", "90")),
    float(os.getenv("DOWNTIME_MAX_SECONDS", "900")),
)

TICK = 0.2


def utc_now_iso():
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def spread(seconds):
    """Randomize a period by JITTER_FRACTION, never below one second."""
    swing = seconds * JITTER_FRACTION
    return max(1.0, seconds + random.uniform(-swing, swing))


class Counters:
    def __init__(self):
        self.sent = 0
        self.failed = 0
        self.falls = 0

    def line(self, devices, per_second):
        return (
            f"[sim] devices={devices} msgs_total={self.sent} msgs_per_sec={per_second:.1f} "
            f"falls={self.falls} errors={self.failed}"
        )


class SimulatedWearable:
    def __init__(self, serial, resting_bpm, ip, client, counters):
        self.serial = serial
        self.resting_bpm = resting_bpm
        self.ip = ip
        self.client = client
        self.counters = counters
        self.bpm = int(resting_bpm)
        self.down_until = None
        self.due_heart_rate = 0.0
        self.due_status = 0.0

    def send(self, kind, body):
        body.setdefault("timestamp", utc_now_iso())
        info = self.client.publish(f"device/{self.serial}/{kind}", json.dumps(body), qos=1)
        if info.rc == mqtt.MQTT_ERR_SUCCESS:
            self.counters.sent += 1
        else:
            self.counters.failed += 1

    def announce(self, online):
        body = {"online": online}
        if online:
            body["signalStrength"] = random.randint(-80, -40)
            body["firmwareVersion"] = FIRMWARE_VERSION
            body["ip"] = self.ip
        self.send("status", body)

    def sample_bpm(self):
        if random.random() < ABNORMAL_HR_CHANCE:
            return random.choice((random.randint(35, 45), random.randint(125, 150)))
        pull = (self.resting_bpm - self.bpm) * 0.2
        drifted = self.bpm + pull + random.uniform(-3.0, 3.0)
        return int(round(min(110.0, max(50.0, drifted))))

    def fall_body(self):
        x, y = random.uniform(-2.0, 2.0), random.uniform(-2.0, 2.0)
        z = random.uniform(2.5, 4.0)
        return {
            "accelerationX": round(x, 3),
            "accelerationY": round(y, 3),
            "accelerationZ": round(z, 3),
            "magnitude": round(math.sqrt(x * x + y * y + z * z), 3),
        }

    def go_down(self, now, reason):
        self.down_until = now + random.uniform(*OUTAGE_SECONDS)
        print(f"[sim] {self.serial} {reason}")

    def step(self, now):
        if self.down_until is not None:
            if now < self.down_until:
                return
            self.down_until = None
            print(f"[sim] {self.serial} back online")
            self.announce(True)
            self.due_status = now + spread(STATUS_EVERY)

        if now >= self.due_heart_rate:
            self.due_heart_rate = now + spread(HEART_RATE_EVERY)
            roll = random.random()
            if roll < POWER_LOSS_CHANCE:
                self.go_down(now, "lost power")
                return
            if roll < POWER_LOSS_CHANCE + WIFI_DROP_CHANCE:
                self.announce(False)
                self.go_down(now, "wifi dropped")
                return
            self.bpm = self.sample_bpm()
            self.send("heartrate", {"heartRate": self.bpm, "isAbnormal": not 50 <= self.bpm <= 120})
            if random.random() < FALL_CHANCE:
                self.send("fall", self.fall_body())
                self.counters.falls += 1
                print(f"[sim] {self.serial} fall")

        if now >= self.due_status:
            self.announce(True)
            self.due_status = now + spread(STATUS_EVERY)

    async def run(self):
        self.announce(True)
        started = time.time()
        self.due_heart_rate = started + spread(HEART_RATE_EVERY)
        self.due_status = started + spread(STATUS_EVERY)
        while True:
            self.step(time.time())
            await asyncio.sleep(TICK)


def build_fleet(client, counters):
    seeded = random.Random(42)
    return [
        SimulatedWearable(
            serial=f"{SERIAL_PREFIX}-{n:03d}",
            resting_bpm=seeded.uniform(60.0, 90.0),
            ip=f"192.168.1.{100 + n}",
            client=client,
            counters=counters,
        )
        for n in range(1, DEVICE_COUNT + 1)
    ]


async def report(counters, fleet_size):
    previous, since = counters.sent, time.monotonic()
    while True:
        await asyncio.sleep(STATS_EVERY)
        elapsed = max(1.0, time.monotonic() - since)
        print(counters.line(fleet_size, (counters.sent - previous) / elapsed))
        previous, since = counters.sent, time.monotonic()


async def main():
    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=f"fallhelp-sim-{os.getpid()}")
    client.connect(MQTT_HOST, MQTT_PORT, keepalive=60)
    client.loop_start()

    counters = Counters()
    fleet = build_fleet(client, counters)
    print(f"[sim] {len(fleet)} wearables publishing to {MQTT_HOST}:{MQTT_PORT}")
    try:
        await asyncio.gather(report(counters, len(fleet)), *(w.run() for w in fleet))
    finally:
        client.loop_stop()
        client.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
