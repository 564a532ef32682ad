#!/usr/bin/env python3
"""
Write a synthetic PNG pattern directory.

Each class is a random black and white prototype image; every sample is
a copy of its class prototype with a fraction of the pixels flipped.
The result can be fed straight to ``caveboy -t``.

Usage:
    python scripts/make_pattern_dir.py OUT_DIR [--classes 3] [--per-class 10]
        [--width 8] [--height 8] [--noise 0.05] [--seed 0]

The script will:
1. Create one sub directory per class under OUT_DIR
2. Write the noisy samples as 8 bit grayscale PNGs
3. Read the directory back to verify every image loads
"""

import os
import sys
import argparse

from caveboy.loaders import load_pattern_directory
from caveboy.synthetic import write_pattern_directory


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument('out_dir', help='directory to create')
    parser.add_argument('--classes', type=int, default=3)
    parser.add_argument('--per-class', type=int, default=10)
    parser.add_argument('--width', type=int, default=8)
    parser.add_argument('--height', type=int, default=8)
    parser.add_argument('--noise', type=float, default=0.05,
                        help='probability of flipping each pixel')
    parser.add_argument('--seed', type=int, default=None)
    return parser.parse_args(argv)


def main(argv=None):
    """Main generation function."""
    args = parse_args(argv)

    print("=" * 60)
    print("Synthetic Pattern Directory Generator")
    print("=" * 60)

    if os.path.exists(args.out_dir) and os.listdir(args.out_dir):
        print(f"❌ Error: {args.out_dir} exists and is not empty")
        sys.exit(1)

    print(f"\n🖼️  Writing {args.classes} class(es) x {args.per_class} sample(s) "
          f"of {args.width}x{args.height} to: {args.out_dir}")
    try:
        names = write_pattern_directory(
            args.out_dir,
            n_classes=args.classes,
            per_class=args.per_class,
            width=args.width,
            height=args.height,
            noise=args.noise,
            seed=args.seed
        )
    except ValueError as e:
        print(f"❌ Error: {e}")
        sys.exit(1)
    print(f"✅ Wrote classes: {', '.join(names)}")

    print(f"\n🔍 Verifying pattern directory...")
    pattern_set = load_pattern_directory(args.out_dir)
    if pattern_set is None or len(pattern_set) != args.classes * args.per_class:
        print("❌ Verification failed: could not read every image back")
        sys.exit(1)
    print(f"✅ Verification passed! {len(pattern_set)} patterns, "
          f"{pattern_set.n_in} inputs each.")

    print("\n" + "=" * 60)
    print("✅ PATTERN DIRECTORY READY!")
    print("=" * 60)
    print(f"\nTrain with: caveboy -t -n {args.out_dir}")


if __name__ == "__main__":
    main()
