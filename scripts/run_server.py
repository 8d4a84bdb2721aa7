import argparse
import asyncio
import logging
import os

import torch
import torch.nn as nn
from aiohttp import web

from fedsync.core.dataset import DistributedDataset
from fedsync.server.asgd_server import AsynchronousSGDServer
from fedsync.server.federated_server import FederatedServer
from fedsync.server.transport import create_app, create_socket_server

logger = logging.getLogger("run_server")


def toy_regression(n, seed=0):
    generator = torch.Generator().manual_seed(seed)
    x = torch.randn(n, 1, generator=generator)
    return x, 3 * x - 1


async def serve(args):
    sio = create_socket_server()
    config = {
        "modelDir": args.model_dir,
        "verbose": args.verbose,
        "compileArgs": {"learningRate": args.learning_rate, "metrics": []},
        "clientHyperparams": {"examplesPerUpdate": args.examples_per_update, "learningRate": args.learning_rate},
        "serverHyperparams": {"minUpdatesPerVersion": args.min_updates},
    }

    if args.mode == "federated":
        server = FederatedServer(sio, nn.Linear(1, 1), config)
    else:
        x, y = toy_regression(args.examples)
        dataset = DistributedDataset(x, y, {"batchSize": args.batch_size, "epochs": args.epochs})
        server = AsynchronousSGDServer(sio, nn.Linear(1, 1), dataset, config)

    server.on_new_version(lambda old, new: print(f"Model version {old} -> {new}"))
    await server.setup()

    runner = web.AppRunner(create_app(sio))
    await runner.setup()
    await web.TCPSite(runner, args.host, args.port).start()
    logger.info("Serving %s model on %s:%d", args.mode, args.host, args.port)
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Serve a toy linear regression model")
    parser.add_argument("--mode", choices=["federated", "asgd"], default="federated")
    parser.add_argument("--host", type=str, default=os.environ.get("FEDSYNC_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("FEDSYNC_PORT", "8080")))
    parser.add_argument("--model-dir", type=str, default="saved-models", help="Where model versions are stored")
    parser.add_argument("--min-updates", type=int, default=3, help="Uploads per new version (federated)")
    parser.add_argument("--examples-per-update", type=int, default=16)
    parser.add_argument("--learning-rate", type=float, default=0.05)
    parser.add_argument("--examples", type=int, default=512, help="Dataset size (asgd)")
    parser.add_argument("--batch-size", type=int, default=32, help="Batch size (asgd)")
    parser.add_argument("--epochs", type=int, default=5, help="Passes over the dataset (asgd)")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    try:
        asyncio.run(serve(args))
    except KeyboardInterrupt:
        pass
