import argparse
import asyncio
import logging

import torch
import torch.nn as nn

from fedsync.client.asgd_client import AsynchronousSGDClient
from fedsync.client.federated_client import FederatedClient


def toy_regression(n, seed=0):
    generator = torch.Generator().manual_seed(seed)
    x = torch.randn(n, 1, generator=generator)
    return x, 3 * x - 1


async def run(args):
    module = nn.Linear(1, 1)
    module.input_shape = [1]
    module.output_shape = [1]
    config = {"verbose": args.verbose, "compileArgs": {"metrics": []}, "sendMetrics": True}
    if args.client_id:
        config["clientId"] = args.client_id

    if args.mode == "federated":
        client = FederatedClient(args.url, module, config)
        await client.setup()
        for step in range(args.updates):
            x, y = toy_regression(client.num_examples_per_update(), seed=args.seed + step)
            await client.distributed_update(x, y)
    else:
        client = AsynchronousSGDClient(args.url, module, config)
        await client.setup()
        await client.run(idle_timeout=args.idle_timeout)

    x_test, y_test = toy_regression(256, seed=12345)
    print(f"Client {client.client_id}: {client.num_updates()} uploads over {client.num_versions()} versions, "
          f"test loss {client.evaluate(x_test, y_test)[0]:.4f} at version {client.model_version()}")
    await client.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Train a toy linear regression model against a fedsync server")
    parser.add_argument("--url", type=str, default="http://localhost:8080")
    parser.add_argument("--mode", choices=["federated", "asgd"], default="federated")
    parser.add_argument("--client-id", type=str, default=None, help="Defaults to the persisted client id")
    parser.add_argument("--updates", type=int, default=10, help="Uploads to make (federated)")
    parser.add_argument("--idle-timeout", type=float, default=5.0, help="Seconds to wait for a batch (asgd)")
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    asyncio.run(run(args))
