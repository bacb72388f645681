# pyright: reportUndefinedVariable=false
# pyright: reportGeneralTypeIssues=false

from __future__ import annotations

"""Graphics pipelines for kernels.

A `CompiledProgram` pairs the shared quad vertex stage with one kernel's
fragment stage. Samplers live in descriptor set 0 (binding = declaration
order); every other uniform is a push constant at the offset fixed by the
kernel's `UniformLayout`.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, TYPE_CHECKING

from .errors import ShaderLinkError
from .shaders import ATTRIBUTES, QUAD_STRIDE, QUAD_VERTEX_COUNT, POSITION_LOCATION, TEXCOORD_LOCATION
from .uniforms import UniformLayout

try:
    from vulkan import *  # type: ignore
    import vulkan as _vk  # type: ignore

    _HAS_VULKAN = True
except Exception:
    _HAS_VULKAN = False

if TYPE_CHECKING:  # pragma: no cover
    from vulkan import *  # type: ignore
    from .context import GPUContext
    from .textures import OutputTarget, Texture


@dataclass
class CompiledProgram:
    pipeline: Any
    pipeline_layout: Any
    descriptor_set_layout: Any
    descriptor_pool: Any
    descriptor_set: Any
    layout: UniformLayout
    source: str
    attributes: Dict[str, int] = field(default_factory=lambda: dict(ATTRIBUTES))

    def draw(
        self,
        ctx: "GPUContext",
        target: "OutputTarget",
        textures: Sequence["Texture"],
        push_constants: bytes,
    ) -> None:
        """Render the full-screen quad into target; blocks until the GPU is done."""

        if len(textures) != len(self.layout.samplers):
            raise ValueError(
                f"expected {len(self.layout.samplers)} input textures, got {len(textures)}"
            )

        if textures:
            image_infos = [
                VkDescriptorImageInfo(
                    sampler=ctx.sampler,
                    imageView=tex.view,
                    imageLayout=VK_IMAGE_LAYOUT_SHADER_READ_ONLY_OPTIMAL,
                )
                for tex in textures
            ]
            writes = [
                VkWriteDescriptorSet(
                    sType=VK_STRUCTURE_TYPE_WRITE_DESCRIPTOR_SET,
                    dstSet=self.descriptor_set,
                    dstBinding=i,
                    dstArrayElement=0,
                    descriptorCount=1,
                    descriptorType=VK_DESCRIPTOR_TYPE_COMBINED_IMAGE_SAMPLER,
                    pImageInfo=[info],
                )
                for i, info in enumerate(image_infos)
            ]
            vkUpdateDescriptorSets(ctx.device, len(writes), writes, 0, None)

        width, height = target.width, target.height
        r, g, b, a = ctx.clear_color
        rpbi = VkRenderPassBeginInfo(
            sType=VK_STRUCTURE_TYPE_RENDER_PASS_BEGIN_INFO,
            renderPass=target.render_pass,
            framebuffer=target.framebuffer,
            renderArea=VkRect2D(
                offset=VkOffset2D(x=0, y=0),
                extent=VkExtent2D(width=width, height=height),
            ),
            clearValueCount=1,
            pClearValues=[VkClearValue(color=VkClearColorValue(float32=[r, g, b, a]))],
        )

        with ctx.one_shot() as cmd:
            vkCmdBeginRenderPass(cmd, rpbi, VK_SUBPASS_CONTENTS_INLINE)
            vkCmdBindPipeline(cmd, VK_PIPELINE_BIND_POINT_GRAPHICS, self.pipeline)
            vkCmdSetViewport(
                cmd,
                0,
                1,
                [
                    VkViewport(
                        x=0.0,
                        y=0.0,
                        width=float(width),
                        height=float(height),
                        minDepth=0.0,
                        maxDepth=1.0,
                    )
                ],
            )
            vkCmdSetScissor(
                cmd,
                0,
                1,
                [VkRect2D(offset=VkOffset2D(x=0, y=0), extent=VkExtent2D(width=width, height=height))],
            )
            if self.descriptor_set is not None:
                vkCmdBindDescriptorSets(
                    cmd,
                    VK_PIPELINE_BIND_POINT_GRAPHICS,
                    self.pipeline_layout,
                    0,
                    1,
                    [self.descriptor_set],
                    0,
                    None,
                )
            if push_constants:
                pc = _vk.ffi.new("char[]", push_constants)
                vkCmdPushConstants(
                    cmd,
                    self.pipeline_layout,
                    VK_SHADER_STAGE_FRAGMENT_BIT,
                    0,
                    len(push_constants),
                    pc,
                )
            vkCmdBindVertexBuffers(cmd, 0, 1, [ctx.quad_buffer], [0])
            vkCmdDraw(cmd, QUAD_VERTEX_COUNT, 1, 0, 0)
            vkCmdEndRenderPass(cmd)

        target.texture.layout = VK_IMAGE_LAYOUT_TRANSFER_SRC_OPTIMAL

    def destroy(self, ctx: "GPUContext") -> None:
        device = ctx.device
        if device is None:
            return
        if self.pipeline is not None:
            vkDestroyPipeline(device, self.pipeline, None)
        if self.pipeline_layout is not None:
            vkDestroyPipelineLayout(device, self.pipeline_layout, None)
        if self.descriptor_pool is not None:
            vkDestroyDescriptorPool(device, self.descriptor_pool, None)
        if self.descriptor_set_layout is not None:
            vkDestroyDescriptorSetLayout(device, self.descriptor_set_layout, None)
        self.pipeline = self.pipeline_layout = None
        self.descriptor_pool = self.descriptor_set_layout = self.descriptor_set = None


def build_program(ctx: "GPUContext", fragment_spv: bytes, layout: UniformLayout, source: str = "") -> CompiledProgram:
    """Link a compiled fragment stage with the quad vertex stage."""

    assert ctx.device is not None
    device = ctx.device
    program = CompiledProgram(
        pipeline=None,
        pipeline_layout=None,
        descriptor_set_layout=None,
        descriptor_pool=None,
        descriptor_set=None,
        layout=layout,
        source=source,
    )
    fragment_module: Optional[VkShaderModule] = None
    try:
        n = len(layout.samplers)
        bindings = [
            VkDescriptorSetLayoutBinding(
                binding=i,
                descriptorType=VK_DESCRIPTOR_TYPE_COMBINED_IMAGE_SAMPLER,
                descriptorCount=1,
                stageFlags=VK_SHADER_STAGE_FRAGMENT_BIT,
            )
            for i in range(n)
        ]
        set_layouts = []
        if n:
            dsci = VkDescriptorSetLayoutCreateInfo(
                sType=VK_STRUCTURE_TYPE_DESCRIPTOR_SET_LAYOUT_CREATE_INFO,
                bindingCount=len(bindings),
                pBindings=bindings,
            )
            program.descriptor_set_layout = vkCreateDescriptorSetLayout(device, dsci, None)
            set_layouts = [program.descriptor_set_layout]

            pool_sizes = [
                VkDescriptorPoolSize(
                    type=VK_DESCRIPTOR_TYPE_COMBINED_IMAGE_SAMPLER,
                    descriptorCount=n,
                )
            ]
            dpci = VkDescriptorPoolCreateInfo(
                sType=VK_STRUCTURE_TYPE_DESCRIPTOR_POOL_CREATE_INFO,
                maxSets=1,
                poolSizeCount=len(pool_sizes),
                pPoolSizes=pool_sizes,
            )
            program.descriptor_pool = vkCreateDescriptorPool(device, dpci, None)
            dsai = VkDescriptorSetAllocateInfo(
                sType=VK_STRUCTURE_TYPE_DESCRIPTOR_SET_ALLOCATE_INFO,
                descriptorPool=program.descriptor_pool,
                descriptorSetCount=1,
                pSetLayouts=set_layouts,
            )
            program.descriptor_set = vkAllocateDescriptorSets(device, dsai)[0]

        push_ranges = []
        if layout.size:
            push_ranges = [
                VkPushConstantRange(
                    stageFlags=VK_SHADER_STAGE_FRAGMENT_BIT,
                    offset=0,
                    size=layout.size,
                )
            ]
        plci = VkPipelineLayoutCreateInfo(
            sType=VK_STRUCTURE_TYPE_PIPELINE_LAYOUT_CREATE_INFO,
            setLayoutCount=len(set_layouts),
            pSetLayouts=set_layouts or None,
            pushConstantRangeCount=len(push_ranges),
            pPushConstantRanges=push_ranges or None,
        )
        program.pipeline_layout = vkCreatePipelineLayout(device, plci, None)

        fragment_module = ctx.create_shader_module(fragment_spv)
        program.pipeline = _create_pipeline(ctx, fragment_module, program.pipeline_layout)
    except Exception as e:
        program.destroy(ctx)
        raise ShaderLinkError(f"Failed to build kernel pipeline: {e!r}") from e
    finally:
        if fragment_module is not None:
            vkDestroyShaderModule(device, fragment_module, None)

    return program


def _create_pipeline(ctx: "GPUContext", fragment_module: VkShaderModule, pipeline_layout: VkPipelineLayout) -> VkPipeline:
    stages = [
        VkPipelineShaderStageCreateInfo(
            sType=VK_STRUCTURE_TYPE_PIPELINE_SHADER_STAGE_CREATE_INFO,
            stage=VK_SHADER_STAGE_VERTEX_BIT,
            module=ctx.vertex_module,
            pName=b"main",
        ),
        VkPipelineShaderStageCreateInfo(
            sType=VK_STRUCTURE_TYPE_PIPELINE_SHADER_STAGE_CREATE_INFO,
            stage=VK_SHADER_STAGE_FRAGMENT_BIT,
            module=fragment_module,
            pName=b"main",
        ),
    ]

    vertex_input = VkPipelineVertexInputStateCreateInfo(
        sType=VK_STRUCTURE_TYPE_PIPELINE_VERTEX_INPUT_STATE_CREATE_INFO,
        vertexBindingDescriptionCount=1,
        pVertexBindingDescriptions=[
            VkVertexInputBindingDescription(
                binding=0,
                stride=QUAD_STRIDE,
                inputRate=VK_VERTEX_INPUT_RATE_VERTEX,
            )
        ],
        vertexAttributeDescriptionCount=2,
        pVertexAttributeDescriptions=[
            VkVertexInputAttributeDescription(
                location=POSITION_LOCATION,
                binding=0,
                format=VK_FORMAT_R32G32B32_SFLOAT,
                offset=0,
            ),
            VkVertexInputAttributeDescription(
                location=TEXCOORD_LOCATION,
                binding=0,
                format=VK_FORMAT_R32G32_SFLOAT,
                offset=3 * 4,
            ),
        ],
    )
    input_assembly = VkPipelineInputAssemblyStateCreateInfo(
        sType=VK_STRUCTURE_TYPE_PIPELINE_INPUT_ASSEMBLY_STATE_CREATE_INFO,
        topology=VK_PRIMITIVE_TOPOLOGY_TRIANGLE_STRIP,
        primitiveRestartEnable=VK_FALSE,
    )
    # Viewport and scissor are dynamic; these are placeholders.
    viewport_state = VkPipelineViewportStateCreateInfo(
        sType=VK_STRUCTURE_TYPE_PIPELINE_VIEWPORT_STATE_CREATE_INFO,
        viewportCount=1,
        pViewports=[VkViewport(x=0.0, y=0.0, width=1.0, height=1.0, minDepth=0.0, maxDepth=1.0)],
        scissorCount=1,
        pScissors=[VkRect2D(offset=VkOffset2D(x=0, y=0), extent=VkExtent2D(width=1, height=1))],
    )
    rasterization = VkPipelineRasterizationStateCreateInfo(
        sType=VK_STRUCTURE_TYPE_PIPELINE_RASTERIZATION_STATE_CREATE_INFO,
        depthClampEnable=VK_FALSE,
        rasterizerDiscardEnable=VK_FALSE,
        polygonMode=VK_POLYGON_MODE_FILL,
        cullMode=VK_CULL_MODE_NONE,
        frontFace=VK_FRONT_FACE_COUNTER_CLOCKWISE,
        depthBiasEnable=VK_FALSE,
        depthBiasConstantFactor=0.0,
        depthBiasClamp=0.0,
        depthBiasSlopeFactor=0.0,
        lineWidth=1.0,
    )
    multisample = VkPipelineMultisampleStateCreateInfo(
        sType=VK_STRUCTURE_TYPE_PIPELINE_MULTISAMPLE_STATE_CREATE_INFO,
        rasterizationSamples=VK_SAMPLE_COUNT_1_BIT,
        sampleShadingEnable=VK_FALSE,
        minSampleShading=1.0,
        alphaToCoverageEnable=VK_FALSE,
        alphaToOneEnable=VK_FALSE,
    )
    blend_attachment = VkPipelineColorBlendAttachmentState(
        blendEnable=VK_FALSE,
        srcColorBlendFactor=VK_BLEND_FACTOR_ONE,
        dstColorBlendFactor=VK_BLEND_FACTOR_ZERO,
        colorBlendOp=VK_BLEND_OP_ADD,
        srcAlphaBlendFactor=VK_BLEND_FACTOR_ONE,
        dstAlphaBlendFactor=VK_BLEND_FACTOR_ZERO,
        alphaBlendOp=VK_BLEND_OP_ADD,
        colorWriteMask=(
            VK_COLOR_COMPONENT_R_BIT
            | VK_COLOR_COMPONENT_G_BIT
            | VK_COLOR_COMPONENT_B_BIT
            | VK_COLOR_COMPONENT_A_BIT
        ),
    )
    color_blend = VkPipelineColorBlendStateCreateInfo(
        sType=VK_STRUCTURE_TYPE_PIPELINE_COLOR_BLEND_STATE_CREATE_INFO,
        logicOpEnable=VK_FALSE,
        logicOp=VK_LOGIC_OP_COPY,
        attachmentCount=1,
        pAttachments=[blend_attachment],
        blendConstants=[0.0, 0.0, 0.0, 0.0],
    )
    dynamic_state = VkPipelineDynamicStateCreateInfo(
        sType=VK_STRUCTURE_TYPE_PIPELINE_DYNAMIC_STATE_CREATE_INFO,
        dynamicStateCount=2,
        pDynamicStates=[VK_DYNAMIC_STATE_VIEWPORT, VK_DYNAMIC_STATE_SCISSOR],
    )

    gpci = VkGraphicsPipelineCreateInfo(
        sType=VK_STRUCTURE_TYPE_GRAPHICS_PIPELINE_CREATE_INFO,
        stageCount=len(stages),
        pStages=stages,
        pVertexInputState=vertex_input,
        pInputAssemblyState=input_assembly,
        pViewportState=viewport_state,
        pRasterizationState=rasterization,
        pMultisampleState=multisample,
        pDepthStencilState=None,
        pColorBlendState=color_blend,
        pDynamicState=dynamic_state,
        layout=pipeline_layout,
        renderPass=ctx.textures.render_pass,
        subpass=0,
        basePipelineHandle=VK_NULL_HANDLE,
        basePipelineIndex=-1,
    )
    return vkCreateGraphicsPipelines(ctx.device, VK_NULL_HANDLE, 1, [gpci], None)[0]
