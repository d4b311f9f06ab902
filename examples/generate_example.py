"""Example: load a GGUF model and generate text.

Usage:
    python examples/generate_example.py /path/to/model.gguf "Write a haiku about rivers" [gpu_layers]
"""

import sys

from gguf_serve_lite import InferenceEngine
from gguf_serve_lite.utils import configure_logging


def main():
    if len(sys.argv) < 3:
        print(__doc__)
        sys.exit(1)

    path, prompt = sys.argv[1], sys.argv[2]
    gpu_layers = int(sys.argv[3]) if len(sys.argv) > 3 else 0

    configure_logging("INFO")
    engine = InferenceEngine()

    print("=== Backend ===")
    for key, value in engine.backend_info().items():
        print(f"  {key}: {value}")

    metadata = engine.read_model_metadata(path)
    print(f"\nArchitecture: {metadata.get('general.architecture', 'unknown')}")
    print(f"Tensors: {metadata.get('tensor_count')}")

    print(f"\n{engine.load_model(path, context_length=4096, gpu_layers=gpu_layers)}")
    model_key = engine.model_status()[0]

    # Stream tokens as they are produced
    print("\n=== Streaming ===")
    for event in engine.generate_stream(model_key, prompt, max_tokens=128, temperature=0.7, seed=42):
        if event.is_complete:
            print(f"\n[finish_reason={event.finish_reason}]")
        else:
            print(event.token, end="", flush=True)

    print("\n=== Greedy ===")
    print(engine.generate(model_key, prompt, max_tokens=64, temperature=0.0))

    estimate = engine.memory_info()
    print(f"\nEstimated usage: {estimate.used_gb:.1f}/{estimate.total_gb:.1f} GB "
          f"({estimate.usage_percent:.0f}%)")

    print(engine.unload_model())


if __name__ == "__main__":
    main()
