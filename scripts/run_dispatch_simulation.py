import csv
import logging
import os
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List

from dispatch.dispatcher import create_dispatcher
from rides.policy import DispatchPolicy

RIDER_FINAL_MESSAGES = {"ride_assigned", "no_drivers", "ride_expired", "ride_cancelled"}


class SimulatedDriver:
    """
    In-memory connection for one driver. Offers are answered on a worker
    thread after the driver's response delay, the way a phone would answer.
    """
    def __init__(self, driver_id, accept_probability, response_delay_ms, pool):
        self.driver_id = driver_id
        self.accept_probability = accept_probability
        self.response_delay_ms = response_delay_ms
        self.pool = pool
        self.dispatcher = None
        self.messages = []

    def send(self, message):
        self.messages.append(message)
        if message["type"] == "ride_offer":
            self.pool.submit(self._answer, message["request_id"])
        elif message["type"] == "ride_assigned":
            self.pool.submit(self._drive, message["request_id"])

    def _answer(self, request_id):
        # Jitter so that drivers with equal delays still race each other
        time.sleep((self.response_delay_ms + random.randint(0, 50)) / 1000)
        decision = "accept" if random.random() < self.accept_probability else "reject"
        self.dispatcher.driver_respond(request_id, self.driver_id, decision, reason="simulated")

    def _drive(self, request_id):
        time.sleep(random.uniform(0.5, 2.0))
        self.dispatcher.complete_ride(request_id, self.driver_id)


class SimulatedRider:
    def __init__(self, rider_id):
        self.rider_id = rider_id
        self.messages = []
        self.resolved = threading.Event()

    def send(self, message):
        self.messages.append(message)
        if message["type"] in RIDER_FINAL_MESSAGES:
            self.resolved.set()

    @property
    def result(self):
        finals = [m for m in self.messages if m["type"] in RIDER_FINAL_MESSAGES]
        return finals[0] if finals else None


def load_drivers(filepath="mock_drivers_100.csv") -> List[Dict]:
    drivers = []

    # Resolve the correct path depending on where the user runs the script from.
    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    absolute_path = filepath if os.path.isabs(filepath) else os.path.join(base_dir, filepath)

    with open(absolute_path, 'r') as file:
        reader = csv.DictReader(file)
        for row in reader:
            drivers.append({
                "driver_id": row['driver_id'],
                "available": row['available'] == "1",
                "accept_probability": float(row['accept_probability']),
                "response_delay_ms": int(row['response_delay_ms']),
            })
    return drivers


def run_simulation(drivers_file="mock_drivers_100.csv", num_riders=30, request_ttl_seconds=5):
    print("=== STARTING RIDE DISPATCH SIMULATION ===")
    logging.basicConfig(level=logging.WARNING)

    # 1. Load Data
    roster = load_drivers(drivers_file)
    print(f"Loaded {len(roster)} Drivers, simulating {num_riders} Riders.\n")

    # 2. Configure System
    policy = DispatchPolicy(request_ttl_seconds=request_ttl_seconds)
    pool = ThreadPoolExecutor(max_workers=64)
    dispatcher = create_dispatcher(policy=policy, sinks=[])

    drivers = []
    for row in roster:
        driver = SimulatedDriver(row["driver_id"], row["accept_probability"], row["response_delay_ms"], pool)
        driver.dispatcher = dispatcher
        dispatcher.register_connection(driver.driver_id, "driver", driver)
        if row["available"]:
            dispatcher.set_driver_availability(driver.driver_id, True)
        drivers.append(driver)

    # 3. Riders submit at staggered times
    riders = []
    start_time = time.time()
    for i in range(num_riders):
        rider = SimulatedRider(f"RDR-{str(i+1).zfill(3)}")
        dispatcher.register_connection(rider.rider_id, "rider", rider)
        riders.append(rider)
        dispatcher.submit_ride_request(
            rider.rider_id,
            origin=f"Pickup {i+1}",
            destination=f"Dropoff {i+1}",
            fare_estimate=round(random.uniform(8, 40), 2),
        )
        time.sleep(random.uniform(0, 0.2))

    # 4. Wait for every request to reach an outcome
    for rider in riders:
        rider.resolved.wait(request_ttl_seconds + 5)
    elapsed = time.time() - start_time

    # Save next to the script
    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    output_path = os.path.join(base_dir, "dispatch_results.csv")

    outcomes: Dict[str, int] = {}
    with open(output_path, "w", newline='') as file:
        writer = csv.writer(file)
        writer.writerow(["request_id", "rider_id", "outcome", "assigned_driver", "drivers_offered", "drivers_declined"])

        print("\n--- Ride Requests Summary ---")
        for rider in riders:
            final = rider.result
            outcome = final["type"] if final else "UNRESOLVED"
            outcomes[outcome] = outcomes.get(outcome, 0) + 1

            request = dispatcher.get_request(final["request_id"]) if final else None
            writer.writerow([
                request.id if request else "N/A",
                rider.rider_id,
                outcome,
                request.assigned_driver_id if request and request.assigned_driver_id else "N/A",
                len(request.offered_to) if request else 0,
                len(request.declined_by) if request else 0,
            ])

            if outcome == "ride_assigned":
                print(f"[SUCCESS] {rider.rider_id} -> Assigned to {final['driver_id']}")
            else:
                print(f"[FAILED] {rider.rider_id} -> {outcome}")

    dispatcher.stop()
    pool.shutdown(wait=False)

    # Drivers go back in the pool after completing, so one driver can win several rides
    winners = [r.result["driver_id"] for r in riders if r.result and r.result["type"] == "ride_assigned"]
    print("\n=== SIMULATION COMPLETE ===")
    print(f"Requests resolved in {elapsed:.2f}s")
    for outcome, count in sorted(outcomes.items()):
        print(f"{outcome}: {count} / {num_riders}")
    print(f"Distinct winning drivers: {len(set(winners))} for {len(winners)} assignments")
    print(f"Results written to '{output_path}'.")

if __name__ == "__main__":
    run_simulation()
