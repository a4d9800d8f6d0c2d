import argparse
import json
import random
import shutil
import time
from pathlib import Path

from package_detector import AnalysisCache, batch_check_package_usage, find_project_files, is_package_used

# Packages imported by the generated sources
LIBRARIES = [
    "react", "react-dom", "lodash", "axios", "express", "zod", "dayjs", "uuid",
    "@mui/material", "@tanstack/react-query", "rxjs", "classnames", "chalk",
    "commander", "yargs", "debug", "ms", "semver", "glob", "minimist",
]
# Declared but never imported
UNUSED = [f"unused-pkg-{i}" for i in range(30)]

BENCHMARK_DIR = Path("benchmark_src")


def generate_files(num_files: int):
    """Generate a specified number of JavaScript files and a package.json."""
    if BENCHMARK_DIR.exists():
        # Clean up previous benchmark files
        shutil.rmtree(BENCHMARK_DIR)
    (BENCHMARK_DIR / "src").mkdir(parents=True)

    for i in range(num_files):
        filename = BENCHMARK_DIR / "src" / f"file_{i}.js"
        with open(filename, "w") as f:
            num_imports = random.randint(1, 10)
            for lib in random.sample(LIBRARIES, num_imports):
                if random.random() < 0.5:
                    f.write(f"import mod{i} from '{lib}';\n")
                else:
                    f.write(f"const mod{i} = require('{lib}/sub');\n")
            f.write("\nexport function main() {}\n")

    manifest = {
        "name": "benchmark-project",
        "version": "0.1.0",
        "dependencies": {name: "*" for name in LIBRARIES + UNUSED},
    }
    (BENCHMARK_DIR / "package.json").write_text(json.dumps(manifest, indent=2))

    print(f"Generated {num_files} JavaScript files in {BENCHMARK_DIR}/")


def run_benchmark(num_files: int):
    """Run the benchmark and print the results."""
    generate_files(num_files)
    files = find_project_files(BENCHMARK_DIR).files
    packages = LIBRARIES + UNUSED

    # --- One file pass per package ---
    print("\nRunning benchmark with per-package checks...")
    start_time = time.perf_counter()
    cache = AnalysisCache()
    single = {name: is_package_used(name, files, cache) for name in packages}
    single_time = time.perf_counter() - start_time

    # --- One shared pass for all packages ---
    print("Running benchmark with the batch check...")
    start_time = time.perf_counter()
    batch = batch_check_package_usage(packages, files, AnalysisCache())
    batch_time = time.perf_counter() - start_time

    if single != batch:
        print("Verdicts differ between the two modes!")

    # --- Print results ---
    print("\n--- Benchmark Results ---")
    print(f"Number of files:    {len(files)}")
    print(f"Number of packages: {len(packages)}")
    print(f"Per-package mode:   {single_time:.4f} seconds")
    print(f"Batch mode:         {batch_time:.4f} seconds")

    if batch_time < single_time:
        improvement = (single_time - batch_time) / single_time * 100
        print(f"\n🚀 Improvement of {improvement:.2f}% with the batch check!")
    else:
        slowdown = (batch_time - single_time) / single_time * 100
        print(f"\n⚠️ Batch mode was {slowdown:.2f}% slower.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Benchmark for package-detector usage resolution.")
    parser.add_argument(
        "--num-files",
        type=int,
        default=5000,
        help="Number of JavaScript files to generate for the benchmark.",
    )
    args = parser.parse_args()

    run_benchmark(args.num_files)
