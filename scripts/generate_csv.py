"""Generate sample lead CSV files for testing the importer."""
import csv
import random
import sys


def generate_csv(num_rows: int, output_file: str, invalid_ratio: float = 0.0) -> None:
    """
    Generate a CSV file with random lead data.

    Args:
        num_rows: Number of lead rows to generate
        output_file: Output CSV file path
        invalid_ratio: Share of rows written with a malformed email
    """
    first_names = ["Ana", "Bruno", "Carla", "Diego", "Elena", "Felipe", "Gabi", "Hugo", "Iris", "João"]
    last_names = ["Silva", "Souza", "Costa", "Lima", "Gomes", "Ribeiro", "Alves", "Rocha"]
    companies = ["Acme", "Globex", "Initech", "Umbrella", "Hooli", "Stark Industries", "Wayne Corp"]
    positions = ["CEO", "CTO", "Marketing Manager", "Sales Lead", "Engineer", "Analyst"]

    with open(output_file, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["email", "first_name", "last_name", "phone", "company", "job_title", "city"])

        for i in range(num_rows):
            first = random.choice(first_names)
            last = random.choice(last_names)
            email = f"{first.lower()}.{last.lower()}.{i + 1}@example.com"
            if random.random() < invalid_ratio:
                email = email.replace("@", "")

            phone = f"+55 (11) 9{random.randint(1000, 9999)}-{random.randint(1000, 9999)}"
            writer.writerow(
                [
                    email,
                    first,
                    last,
                    phone,
                    random.choice(companies),
                    random.choice(positions),
                    random.choice(["São Paulo", "Lisbon", "Madrid", "Austin"]),
                ]
            )

            # Print progress every 10,000 rows
            if (i + 1) % 10000 == 0:
                print(f"Generated {i+1:,} rows...")

    print(f"✅ Successfully generated {num_rows:,} leads in {output_file}")


def main():
    """Main function to parse arguments and generate CSV."""
    if len(sys.argv) < 2:
        print("Usage: python generate_csv.py <num_rows> [output_file] [invalid_ratio]")
        print("Example: python generate_csv.py 500000 leads_500k.csv 0.01")
        sys.exit(1)

    num_rows = int(sys.argv[1])
    output_file = sys.argv[2] if len(sys.argv) > 2 else f"leads_{num_rows}.csv"
    invalid_ratio = float(sys.argv[3]) if len(sys.argv) > 3 else 0.0

    print(f"Generating CSV with {num_rows:,} rows...")
    generate_csv(num_rows, output_file, invalid_ratio)


if __name__ == "__main__":
    main()
