import asyncio

from pikcel_server import PikcelServer
from pikcel_client.errors import PikcelError, PollingTimeoutError, format_api_error
from pikcel_client.models import ClientConfig, PollingConfig
from pikcel_client.pikcel_client import PikcelAIClient


async def progress(job):
    print(f"Job {job.id} is {job.status.value}")


async def main():
    PORT = 8000
    server = PikcelServer(completion_time=6.0, error_rate=0.1)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = ClientConfig(api_url=f"http://localhost:{PORT}", api_key="demo-key")

    async with PikcelAIClient(config) as client:
        try:
            models = await client.get_ai_models()
            print(f"Available tools: {', '.join(model.name for model in models)}")

            profile = await client.get_user_profile()
            print(f"Credits balance: {profile.credits_balance}")

            job = await client.dispatch_job(
                {
                    "tool_id": models[0].id,
                    "input_image_url": "https://example.com/image.jpg",
                }
            )
            final = await client.poll_job_until_complete(
                job.id,
                on_progress=progress,
                config=PollingConfig(interval=1.0, timeout=60.0),
            )
            print(f"Final status: {final.status.value}")
            if final.output_image_url:
                print(f"Output: {final.output_image_url}")
        except PollingTimeoutError as e:
            print(f"Polling timed out: {e}")
        except PikcelError as e:
            print(f"Error occurred: {format_api_error(e)}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
