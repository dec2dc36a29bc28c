import csv
import random

def generate_mock_drivers(filename="mock_drivers_100.csv", count=100):
    """
    Driver roster for scripts/run_dispatch_simulation.py.

    accept_probability models how picky a driver is; response_delay_ms is how
    long they take to tap Accept/Reject once an offer lands.
    """
    with open(filename, mode='w', newline='') as file:
        writer = csv.writer(file)
        writer.writerow(["driver_id", "available", "accept_probability", "response_delay_ms"])

        for i in range(count):
            driver_id = f"DRV-{str(i+1).zfill(3)}"

            # 80% chance of being online and available, 20% logged in but on a break
            available = random.random() < 0.8

            # Most drivers take a fair share of offers, a few almost never do
            accept_probability = round(random.uniform(0.05, 0.6), 2)

            delay_ms = random.randint(50, 1500)

            writer.writerow([driver_id, int(available), accept_probability, delay_ms])

    print(f"Successfully generated {count} mock drivers into '{filename}'.")

if __name__ == "__main__":
    generate_mock_drivers()
